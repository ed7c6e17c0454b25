"""Hybrid-selection (target capture) metrics from a single pass over aligned reads"""

import bisect
import logging
import math

import pybedtools
from pybedtools.helpers import chromsizes_to_file
from pyrsistent import pmap

from alignment_qc_metrics import histograms
from alignment_qc_metrics.alignment_summary import ratio
from alignment_qc_metrics.histograms import histogram, increment


def estimate_library_size(read_pairs, unique_read_pairs):
    """
    Estimates the size of a library based on the number of paired end molecules observed
    and the number of unique pairs observed.

    Based on the Lander-Waterman equation that states:
    C/X = 1 - exp( -N/X )
    where
    X = number of distinct molecules in library
    N = number of read pairs
    C = number of distinct fragments observed in read pairs

    Returns None if there are no duplicate pairs, as the size cannot be estimated.
    """

    # Method that is used in the computation of estimated library size
    f = lambda x, c, n: c / x - 1 + math.exp(-n / x)

    read_pair_duplicates = read_pairs - unique_read_pairs
    if read_pairs > 0 and read_pair_duplicates > 0:
        m = 1.0
        M = 100.0

        if unique_read_pairs >= read_pairs or f(m * unique_read_pairs, unique_read_pairs, read_pairs) < 0:
            msg = "Invalid values for pairs and unique pairs: %d, %d" % (read_pairs, unique_read_pairs)
            raise ValueError(msg)

        # find value of M, large enough to act as other side for bisection method
        while f(M * unique_read_pairs, unique_read_pairs, read_pairs) > 0:
            M *= 10.0

        # use bisection method (no more than 40 times) to find solution
        for i in range(40):
            r = (m + M) / 2.0
            u = f(r * unique_read_pairs, unique_read_pairs, read_pairs)
            if u == 0:
                break
            elif u > 0:
                m = r
            elif u < 0:
                M = r
        return int(unique_read_pairs * (m + M) / 2.0)
    else:
        return None


def merged_intervals(intervals, padding=0, chrom_sizes=None, logger=None):
    """
    Sort and merge intervals with bedtools. Input is a pybedtools.BedTool or an
    iterable of (contig, start, end). With padding, each interval is widened on
    both sides with bedtools slop, clamped to the contig lengths in chrom_sizes.
    Returns a list of (contig, start, end); coordinates are 0-based, half-open.
    """
    logger = logger if logger != None else logging.getLogger(__name__)
    if isinstance(intervals, pybedtools.BedTool):
        bed = intervals
    else:
        lines = ['%s\t%d\t%d' % (contig, start, end) for (contig, start, end) in intervals]
        if len(lines) == 0:
            return []
        bed = pybedtools.BedTool('\n'.join(lines), from_string=True)
    if bed.count() == 0:
        return []
    if padding > 0:
        if chrom_sizes == None:
            raise ValueError("Contig lengths are required to pad intervals")
        unknown = set(f.chrom for f in bed if f.chrom not in chrom_sizes)
        if len(unknown) > 0:
            logger.warning("Ignoring intervals on contigs not in the alignment header: %s",
                           ', '.join(sorted(unknown)))
            bed = bed.filter(lambda f: f.chrom in chrom_sizes).saveas()
            if bed.count() == 0:
                return []
        genome = {contig: (0, length) for (contig, length) in chrom_sizes.items()}
        bed = bed.slop(b=padding, g=chromsizes_to_file(genome))
    return [(f.chrom, f.start, f.end) for f in bed.sort().merge()]


class interval_set(object):

    """
    Intervals already merged per contig, as returned by merged_intervals.
    Lookups bisect on interval ends.
    """

    def __init__(self, intervals):
        self.intervals = {}
        self.ends = {}
        for (contig, start, end) in intervals:
            self.intervals.setdefault(contig, []).append((start, end))
        for (contig, merged) in self.intervals.items():
            merged.sort()
            self.ends[contig] = [end for (start, end) in merged]

    def __len__(self):
        return sum(len(v) for v in self.intervals.values())

    def territory(self):
        return sum(end - start for v in self.intervals.values() for (start, end) in v)

    def overlapping(self, contig, start, end):
        """Yield (interval index, overlap start, overlap end) for intervals overlapping [start, end)"""
        contig_intervals = self.intervals.get(contig)
        if not contig_intervals:
            return
        i = bisect.bisect_right(self.ends[contig], start)
        while i < len(contig_intervals) and contig_intervals[i][0] < end:
            (iv_start, iv_end) = contig_intervals[i]
            yield (i, max(start, iv_start), min(end, iv_end))
            i += 1

    def overlap(self, contig, start, end):
        return sum(o_end - o_start for (i, o_start, o_end) in self.overlapping(contig, start, end))


class hs_metric_collector(object):

    """
    Accumulates bait and target statistics for one set of baits and targets.
    Bait and near-bait counts include duplicates and low quality reads;
    target coverage uses non-duplicate reads passing mapping and base quality thresholds.
    """

    DEFAULT_NEAR_DISTANCE = 250
    DEFAULT_MIN_MAPQ = 20
    DEFAULT_MIN_BASE_QUALITY = 20
    TARGET_COVERAGE_LEVELS = [1, 2, 10, 20, 30, 40, 50, 100]
    HS_PENALTY_LEVELS = [10, 20, 30, 40, 50, 100]

    def __init__(self, bait_intervals, target_intervals, reference_names, reference_lengths,
                 bait_set_name=None, duplicates_marked=False,
                 near_distance=DEFAULT_NEAR_DISTANCE,
                 minimum_mapping_quality=DEFAULT_MIN_MAPQ,
                 minimum_base_quality=DEFAULT_MIN_BASE_QUALITY,
                 logger=None):
        self.logger = logger if logger != None else logging.getLogger(__name__)
        self.reference_names = list(reference_names)
        chrom_sizes = dict(zip(self.reference_names, reference_lengths))
        self.genome_size = sum(chrom_sizes.values())
        self.baits = interval_set(merged_intervals(bait_intervals, logger=self.logger))
        self.near_baits = interval_set(merged_intervals(bait_intervals, near_distance,
                                                        chrom_sizes, self.logger))
        self.targets = interval_set(merged_intervals(target_intervals, logger=self.logger))
        self.bait_set_name = bait_set_name
        self.duplicates_marked = duplicates_marked
        self.minimum_mapping_quality = minimum_mapping_quality
        self.minimum_base_quality = minimum_base_quality
        self.finished = False
        self.coverage = {
            contig: [[0] * (end - start) for (start, end) in merged]
            for (contig, merged) in self.targets.intervals.items()
        }
        self.total_reads = 0
        self.pf_reads = 0
        self.pf_bases = 0
        self.pf_unique_reads = 0
        self.pf_reads_aligned = 0
        self.pf_bases_aligned = 0
        self.pf_uq_reads_aligned = 0
        self.pf_uq_bases_aligned = 0
        self.on_bait_bases = 0
        self.near_bait_bases = 0
        self.off_bait_bases = 0
        self.on_target_bases = 0
        self.on_target_from_pair_bases = 0
        self.selected_pairs = 0
        self.selected_unique_pairs = 0
        self.logger.debug("Bait territory %d, target territory %d",
                          self.baits.territory(), self.targets.territory())

    def accept_record(self, record, window=None):
        if self.finished:
            msg = "Cannot accept record %s: collector is already finished" % record.query_name
            self.logger.error(msg)
            raise RuntimeError(msg)
        if record.is_secondary_or_supplementary:
            return
        self.total_reads += 1
        if record.is_qcfail:
            return
        self.pf_reads += 1
        self.pf_bases += record.read_length
        if record.is_duplicate:
            self.duplicates_marked = True
        else:
            self.pf_unique_reads += 1
        if record.is_unmapped:
            return
        aligned = record.aligned_bases
        self.pf_reads_aligned += 1
        self.pf_bases_aligned += aligned
        if not record.is_duplicate:
            self.pf_uq_reads_aligned += 1
            self.pf_uq_bases_aligned += aligned
        contig = self.reference_names[record.reference_id]
        blocks = record.alignment_blocks
        selected = False
        for (read_offset, ref_start, length) in blocks:
            ref_end = ref_start + length
            on_bait = self.baits.overlap(contig, ref_start, ref_end)
            on_or_near = self.near_baits.overlap(contig, ref_start, ref_end)
            self.on_bait_bases += on_bait
            self.near_bait_bases += on_or_near - on_bait
            self.off_bait_bases += length - on_or_near
            self.on_target_bases += self.targets.overlap(contig, ref_start, ref_end)
            if on_or_near > 0:
                selected = True
        if selected and record.is_mapped_pair and record.is_read1:
            self.selected_pairs += 1
            if not record.is_duplicate:
                self.selected_unique_pairs += 1
        mapq = record.mapping_quality
        if record.is_duplicate or mapq == None or mapq < self.minimum_mapping_quality:
            return
        quals = record.query_qualities
        if quals == None:
            return
        covered = 0
        for (read_offset, ref_start, length) in blocks:
            overlaps = self.targets.overlapping(contig, ref_start, ref_start + length)
            for (index, o_start, o_end) in overlaps:
                target_coverage = self.coverage[contig][index]
                target_start = self.targets.intervals[contig][index][0]
                for pos in range(o_start, o_end):
                    read_index = read_offset + pos - ref_start
                    if read_index < len(quals) and quals[read_index] >= self.minimum_base_quality:
                        target_coverage[pos - target_start] += 1
                        covered += 1
        if record.is_mapped_pair:
            self.on_target_from_pair_bases += covered

    def coverage_histograms(self):
        """
        Depth histograms over all target bases, and over bases of targets with
        non-zero coverage; plus the number of targets with zero coverage
        """
        depths = {}
        covered_depths = {}
        zero_targets = 0
        for contig_coverage in self.coverage.values():
            for target_coverage in contig_coverage:
                target_zero = max(target_coverage) == 0 if len(target_coverage) > 0 else True
                if target_zero:
                    zero_targets += 1
                for depth in target_coverage:
                    increment(depths, depth)
                    if not target_zero:
                        increment(covered_depths, depth)
        return (depths, covered_depths, zero_targets)

    def calculate_hs_penalty(self, coverage_goal, library_size, fold_80, target_territory):
        """
        Fold of PF_BASES_ALIGNED over (target territory * coverage goal) needed to bring
        80% of target bases to the coverage goal, given the library complexity.
        None if the library size is unknown or the goal cannot be reached.
        """
        if library_size == None or fold_80 == None or target_territory == 0:
            return None
        if self.selected_unique_pairs == 0 or self.on_target_from_pair_bases == 0:
            return None
        coverage_per_unique_pair = float(self.on_target_from_pair_bases) / \
                                   self.selected_unique_pairs / target_territory
        unique_pairs_needed = coverage_goal * fold_80 / coverage_per_unique_pair
        if unique_pairs_needed >= library_size:
            return None
        pairs_needed = -library_size * math.log(1 - unique_pairs_needed / library_size)
        bases_needed = pairs_needed * float(self.pf_bases_aligned) / self.selected_pairs
        return bases_needed / (target_territory * coverage_goal)

    def finish(self):
        if self.finished:
            msg = "Collector is already finished"
            self.logger.error(msg)
            raise RuntimeError(msg)
        self.finished = True
        bait_territory = self.baits.territory()
        target_territory = self.targets.territory()
        selected = self.on_bait_bases + self.near_bait_bases
        (depths, covered_depths, zero_targets) = self.coverage_histograms()
        total_coverage = sum(depth * count for (depth, count) in depths.items())
        row = {
            'BAIT_SET': self.bait_set_name,
            'GENOME_SIZE': self.genome_size,
            'BAIT_TERRITORY': bait_territory,
            'TARGET_TERRITORY': target_territory,
            'BAIT_DESIGN_EFFICIENCY': ratio(target_territory, bait_territory),
            'TOTAL_READS': self.total_reads,
            'PF_READS': self.pf_reads,
            'PF_UNIQUE_READS': self.pf_unique_reads,
            'PCT_PF_READS': ratio(self.pf_reads, self.total_reads),
            'PCT_PF_UQ_READS': ratio(self.pf_unique_reads, self.total_reads),
            'PF_UQ_READS_ALIGNED': self.pf_uq_reads_aligned,
            'PCT_PF_UQ_READS_ALIGNED': ratio(self.pf_uq_reads_aligned, self.pf_unique_reads),
            'PF_BASES_ALIGNED': self.pf_bases_aligned,
            'PF_UQ_BASES_ALIGNED': self.pf_uq_bases_aligned,
            'ON_BAIT_BASES': self.on_bait_bases,
            'NEAR_BAIT_BASES': self.near_bait_bases,
            'OFF_BAIT_BASES': self.off_bait_bases,
            'ON_TARGET_BASES': self.on_target_bases,
            'PCT_SELECTED_BASES': ratio(selected, self.pf_bases_aligned),
            'PCT_OFF_BAIT': ratio(self.off_bait_bases, self.pf_bases_aligned),
            'ON_BAIT_VS_SELECTED': ratio(self.on_bait_bases, selected),
            'MEAN_BAIT_COVERAGE': ratio(self.on_bait_bases, bait_territory),
            'MEAN_TARGET_COVERAGE': histograms.mean(depths),
            'MEDIAN_TARGET_COVERAGE': histograms.median(depths),
            'PCT_USABLE_BASES_ON_BAIT': ratio(self.on_bait_bases, self.pf_bases),
            'PCT_USABLE_BASES_ON_TARGET': ratio(total_coverage, self.pf_bases),
            'ZERO_CVG_TARGETS_PCT': ratio(zero_targets, len(self.targets)),
            'PF_SELECTED_PAIRS': self.selected_pairs,
            'PF_SELECTED_UNIQUE_PAIRS': self.selected_unique_pairs,
        }
        if self.pf_uq_bases_aligned > 0 and bait_territory > 0 and self.genome_size:
            row['FOLD_ENRICHMENT'] = ratio(self.on_bait_bases, self.pf_uq_bases_aligned) / \
                                     ratio(bait_territory, self.genome_size)
        else:
            row['FOLD_ENRICHMENT'] = 0.0
        # 80% of bases in covered targets have at least this depth
        depth_80 = histograms.percentile(covered_depths, 0.2)
        if depth_80 > 0:
            row['FOLD_80_BASE_PENALTY'] = histograms.mean(covered_depths) / depth_80
        else:
            row['FOLD_80_BASE_PENALTY'] = None
        for level in self.TARGET_COVERAGE_LEVELS:
            at_level = sum(count for (depth, count) in depths.items() if depth >= level)
            row['PCT_TARGET_BASES_%dX' % level] = ratio(at_level, target_territory)
        if self.duplicates_marked:
            library_size = estimate_library_size(self.selected_pairs, self.selected_unique_pairs)
        else:
            self.logger.info("Duplicates are not marked; HS_LIBRARY_SIZE will not be estimated")
            library_size = None
        row['HS_LIBRARY_SIZE'] = library_size
        for level in self.HS_PENALTY_LEVELS:
            penalty = self.calculate_hs_penalty(level, library_size,
                                                row['FOLD_80_BASE_PENALTY'], target_territory)
            row['HS_PENALTY_%dX' % level] = penalty
        coverage_hist = histogram('COVERAGE', 'TARGET_BASE_COUNT', depths)
        return (pmap(row), [coverage_hist])
