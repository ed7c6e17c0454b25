"""
Single-pass alignment summary metrics.

Each record is routed to one per_unit_accumulator for ALL_READS and, when its
read group is known from the header, one accumulator at each other enabled
level (SAMPLE, LIBRARY, READ_GROUP). Mates are paired through a buffer keyed by
query name, so that completed pairs can be classified as chimeric.

Input is expected in coordinate or queryname order. Other orders still give
correct results, but the mate buffer then grows with the number of reads
whose mate has not yet been seen.
"""

import logging
import math
from enum import Enum

import attr
from pyrsistent import pmap

from alignment_qc_metrics import histograms
from alignment_qc_metrics.adapters import adapter_matcher, reverse_complement
from alignment_qc_metrics.chimeras import chimera_classifier, chimera_verdict, pair_orientation
from alignment_qc_metrics.histograms import histogram, increment
from alignment_qc_metrics.records import cigar_constants


class metric_accumulation_level(Enum):
    ALL_READS = 'ALL_READS'
    SAMPLE = 'SAMPLE'
    LIBRARY = 'LIBRARY'
    READ_GROUP = 'READ_GROUP'


@attr.s(frozen=True, slots=True)
class pair_result(object):
    """Outcome of classifying a completed pair of mates"""

    verdict = attr.ib()
    orientation = attr.ib()
    eligible = attr.ib()


def ratio(numerator, denominator):
    """Fraction, or 0.0 for a zero denominator"""
    if denominator == 0:
        return 0.0
    return float(numerator) / denominator


class per_unit_accumulator(object):

    """
    Alignment summary statistics for one grouping unit, eg. one read group.
    Accepts records while OPEN; finalize() computes derived fields and the
    accumulator is FINALIZED thereafter.
    """

    STATE_OPEN = 'OPEN'
    STATE_FINALIZED = 'FINALIZED'

    MAPPING_QUALITY_THRESHOLD = 20
    BASE_QUALITY_THRESHOLD = 20
    BAD_CYCLE_THRESHOLD = 0.8
    NO_CALL = 'N'

    # fields left as None when no reference is available
    REFERENCE_FIELDS = [
        'PF_HQ_ALIGNED_BASES',
        'PF_HQ_ALIGNED_Q20_BASES',
        'PF_HQ_MEDIAN_MISMATCHES',
        'PF_HQ_MEDIAN_MISMATCH_RATE',
        'PF_MISMATCH_RATE',
        'PF_HQ_ERROR_RATE',
        'BAD_CYCLES',
    ]

    def __init__(self, level, sample=None, library=None, read_group=None,
                 collect_alignment_info=True, adapters=None, is_bisulfite=False,
                 reference_available=True, split_by_pairing=False):
        self.level = level
        self.sample = sample
        self.library = library
        self.read_group = read_group
        self.collect_alignment_info = collect_alignment_info
        self.adapters = adapters if adapters != None else []
        self.is_bisulfite = is_bisulfite
        self.reference_available = reference_available
        self.split_by_pairing = split_by_pairing
        self.state = self.STATE_OPEN
        self.row = None
        # counts
        self.total_reads = 0
        self.pf_reads = 0
        self.noise_reads = 0
        self.pf_reads_aligned = 0
        self.pf_aligned_bases = 0
        self.positive_strand_reads = 0
        self.indels = 0
        self.aligned_read_bases = 0
        self.soft_clipped_bases = 0
        self.hard_clipped_bases = 0
        self.pf_hq_aligned_reads = 0
        self.pf_hq_aligned_bases = 0
        self.pf_hq_aligned_q20_bases = 0
        self.mismatches = 0
        self.error_denominator = 0
        self.hq_mismatches = 0
        self.hq_error_denominator = 0
        self.reads_aligned_in_pairs = 0
        self.improper_pairs = 0
        self.chimera_eligible_pairs = 0
        self.chimeric_pairs = 0
        self.orientation_counts = {orientation: 0 for orientation in pair_orientation}
        self.adapter_reads = 0
        # histograms
        self.read_lengths = {}
        self.aligned_read_lengths = {}
        self.paired_read_lengths = {}
        self.paired_aligned_read_lengths = {}
        self.unpaired_read_lengths = {}
        self.unpaired_aligned_read_lengths = {}
        self.mismatch_counts = {}
        self.mismatch_rate_percentages = {}
        self.bad_bases_by_cycle = {}

    @property
    def unit_label(self):
        """Name of the unit, used to label histograms; None for ALL_READS"""
        if self.level == metric_accumulation_level.SAMPLE:
            return self.sample
        elif self.level == metric_accumulation_level.LIBRARY:
            return '%s.%s' % (self.sample, self.library)
        elif self.level == metric_accumulation_level.READ_GROUP:
            return self.read_group
        return None

    def check_open(self, action):
        if self.state != self.STATE_OPEN:
            msg = "Cannot %s: accumulator for %s %s is already finalized" \
                  % (action, self.level.value, self.unit_label)
            raise RuntimeError(msg)

    def accept_record(self, record, window=None, pair=None):
        """
        Update counts for one record:
        - window is the reference_window for the record, or None
        - pair is a pair_result if this record completed a pair of mates, or None
        """
        self.check_open('accept record')
        self.total_reads += 1
        if record.is_qcfail:
            if record.is_noise:
                self.noise_reads += 1
            return
        self.pf_reads += 1
        if not self.collect_alignment_info:
            return
        if record.is_secondary_or_supplementary:
            return
        self.update_length_histograms(record, self.read_lengths, record.read_length,
                                      self.paired_read_lengths, self.unpaired_read_lengths)
        if self.adapters and self.is_adapter_read(record):
            self.adapter_reads += 1
        if record.is_unmapped:
            return
        self.pf_reads_aligned += 1
        if not record.is_reverse:
            self.positive_strand_reads += 1
        aligned_bases = record.aligned_bases
        self.pf_aligned_bases += aligned_bases
        self.update_length_histograms(record, self.aligned_read_lengths, aligned_bases,
                                      self.paired_aligned_read_lengths,
                                      self.unpaired_aligned_read_lengths)
        self.indels += record.indel_count
        hard_clipped = record.clipped_bases(cigar_constants.HARD_CLIP)
        self.aligned_read_bases += record.query_length_from_cigar + hard_clipped
        self.soft_clipped_bases += record.clipped_bases(cigar_constants.SOFT_CLIP)
        self.hard_clipped_bases += hard_clipped
        mapq = record.mapping_quality
        high_quality = mapq != None and mapq >= self.MAPPING_QUALITY_THRESHOLD
        if high_quality:
            self.pf_hq_aligned_reads += 1
        if window != None:
            self.compare_to_reference(record, window, high_quality)
        if record.is_mapped_pair:
            self.reads_aligned_in_pairs += 1
            if not record.is_proper_pair:
                self.improper_pairs += 1
            if pair != None:
                if pair.orientation != None:
                    self.orientation_counts[pair.orientation] += 1
                if pair.eligible:
                    self.chimera_eligible_pairs += 1
                    if pair.verdict == chimera_verdict.CHIMERIC:
                        self.chimeric_pairs += 1

    def update_length_histograms(self, record, hist, length, paired_hist, unpaired_hist):
        increment(hist, length)
        if self.split_by_pairing:
            if record.is_paired:
                increment(paired_hist, length)
            else:
                increment(unpaired_hist, length)

    def is_adapter_read(self, record):
        bases = record.query_sequence
        if not bases:
            return False
        if record.is_reverse:
            # match in sequencing order
            bases = reverse_complement(bases)
        return adapter_matcher.is_adapter(bases, self.adapters)

    def is_bisulfite_base(self, record, read_base, ref_base):
        """C->T on the positive strand and G->A on the negative strand are conversions"""
        if record.is_reverse:
            return ref_base == 'G' and read_base == 'A'
        return ref_base == 'C' and read_base == 'T'

    def compare_to_reference(self, record, window, high_quality):
        bases = record.query_sequence
        if not bases:
            return
        quals = record.query_qualities
        read_mismatches = 0
        read_compared = 0
        for (read_offset, ref_start, length) in record.alignment_blocks:
            for i in range(length):
                read_index = read_offset + i
                if read_index >= len(bases):
                    break
                ref_base = window.base_at(ref_start + i)
                if ref_base == None:
                    continue
                read_base = bases[read_index].upper()
                ref_base = ref_base.upper()
                mismatch = read_base != ref_base
                bisulfite_base = False
                if mismatch and self.is_bisulfite and self.is_bisulfite_base(record, read_base, ref_base):
                    bisulfite_base = True
                    mismatch = False
                if mismatch:
                    self.mismatches += 1
                if not bisulfite_base:
                    self.error_denominator += 1
                if not high_quality:
                    continue
                read_compared += 1
                self.pf_hq_aligned_bases += 1
                if not bisulfite_base:
                    self.hq_error_denominator += 1
                if quals != None and read_index < len(quals) \
                   and quals[read_index] >= self.BASE_QUALITY_THRESHOLD:
                    self.pf_hq_aligned_q20_bases += 1
                if mismatch:
                    read_mismatches += 1
                    self.hq_mismatches += 1
                if mismatch or read_base == self.NO_CALL:
                    increment(self.bad_bases_by_cycle, record.cycle(read_index))
        if high_quality and read_compared > 0:
            increment(self.mismatch_counts, read_mismatches)
            # rounded half-up to whole percentages
            rate = int(math.floor(100.0 * read_mismatches / read_compared + 0.5))
            increment(self.mismatch_rate_percentages, rate)

    def count_bad_cycles(self):
        """Cycles where mismatches and no-calls reach BAD_CYCLE_THRESHOLD of all reads"""
        bad_cycles = 0
        if self.total_reads > 0:
            for count in self.bad_bases_by_cycle.values():
                if float(count) / self.total_reads >= self.BAD_CYCLE_THRESHOLD:
                    bad_cycles += 1
        return bad_cycles

    def finalize(self):
        """Compute derived fields; return the immutable metrics row"""
        self.check_open('finalize')
        lengths = self.read_lengths
        row = {
            'ACCUMULATION_LEVEL': self.level.value,
            'SAMPLE': self.sample,
            'LIBRARY': self.library,
            'READ_GROUP': self.read_group,
            'TOTAL_READS': self.total_reads,
            'PF_READS': self.pf_reads,
            'PCT_PF_READS': ratio(self.pf_reads, self.total_reads),
            'PF_NOISE_READS': self.noise_reads,
            'PF_READS_ALIGNED': self.pf_reads_aligned,
            'PCT_PF_READS_ALIGNED': ratio(self.pf_reads_aligned, self.pf_reads),
            'PF_ALIGNED_BASES': self.pf_aligned_bases,
            'PF_HQ_ALIGNED_READS': self.pf_hq_aligned_reads,
            'PF_HQ_ALIGNED_BASES': self.pf_hq_aligned_bases,
            'PF_HQ_ALIGNED_Q20_BASES': self.pf_hq_aligned_q20_bases,
            'PF_HQ_MEDIAN_MISMATCHES': histograms.median(self.mismatch_counts),
            'PF_HQ_MEDIAN_MISMATCH_RATE': histograms.median(self.mismatch_rate_percentages) / 100,
            'PF_MISMATCH_RATE': ratio(self.mismatches, self.error_denominator),
            'PF_HQ_ERROR_RATE': ratio(self.hq_mismatches, self.hq_error_denominator),
            'PF_INDEL_RATE': ratio(self.indels, self.pf_aligned_bases),
            'MEAN_READ_LENGTH': histograms.mean(lengths),
            'SD_READ_LENGTH': histograms.standard_deviation(lengths),
            'MEDIAN_READ_LENGTH': histograms.median(lengths),
            'MAD_READ_LENGTH': histograms.median_absolute_deviation(lengths),
            'MIN_READ_LENGTH': min(lengths.keys()) if len(lengths) > 0 else 0,
            'MAX_READ_LENGTH': max(lengths.keys()) if len(lengths) > 0 else 0,
            'READS_ALIGNED_IN_PAIRS': self.reads_aligned_in_pairs,
            'PCT_READS_ALIGNED_IN_PAIRS': ratio(self.reads_aligned_in_pairs, self.pf_reads_aligned),
            'PF_READS_IMPROPER_PAIRS': self.improper_pairs,
            'PCT_PF_READS_IMPROPER_PAIRS': ratio(self.improper_pairs, self.pf_reads_aligned),
            'BAD_CYCLES': self.count_bad_cycles(),
            'STRAND_BALANCE': ratio(self.positive_strand_reads, self.pf_reads_aligned),
            'CHIMERIC_PAIRS': self.chimeric_pairs,
            'PCT_CHIMERAS': ratio(self.chimeric_pairs, self.chimera_eligible_pairs),
            'PF_ADAPTER_READS': self.adapter_reads,
            'PCT_ADAPTER': ratio(self.adapter_reads, self.pf_reads),
            'PCT_SOFTCLIP': ratio(self.soft_clipped_bases, self.aligned_read_bases),
            'PCT_HARDCLIP': ratio(self.hard_clipped_bases, self.aligned_read_bases),
        }
        for orientation in pair_orientation:
            row['PAIR_ORIENTATION_' + orientation.value] = self.orientation_counts[orientation]
        if not self.reference_available:
            for key in self.REFERENCE_FIELDS:
                row[key] = None
        self.row = pmap(row)
        self.state = self.STATE_FINALIZED
        return self.row

    def get_histograms(self):
        """Read length histograms; only available once finalized"""
        if self.state != self.STATE_FINALIZED:
            raise RuntimeError("Histograms are not available until the accumulator is finalized")
        label = self.unit_label
        prefix = '' if label == None else label + '.'
        results = [
            histogram('READ_LENGTH', prefix + 'TOTAL_LENGTH_COUNT', self.read_lengths),
            histogram('READ_LENGTH', prefix + 'ALIGNED_LENGTH_COUNT', self.aligned_read_lengths),
        ]
        if self.split_by_pairing:
            split = [
                ('PAIRED_TOTAL_LENGTH_COUNT', self.paired_read_lengths),
                ('PAIRED_ALIGNED_LENGTH_COUNT', self.paired_aligned_read_lengths),
                ('UNPAIRED_TOTAL_LENGTH_COUNT', self.unpaired_read_lengths),
                ('UNPAIRED_ALIGNED_LENGTH_COUNT', self.unpaired_aligned_read_lengths),
            ]
            # split histograms are reported only for pairing states seen in the input
            paired_seen = len(self.paired_read_lengths) > 0
            unpaired_seen = len(self.unpaired_read_lengths) > 0
            for (name, hist) in split:
                seen = paired_seen if name.startswith('PAIRED') else unpaired_seen
                if seen:
                    results.append(histogram('READ_LENGTH', prefix + name, hist))
        return results


class alignment_summary_collector(object):

    """
    Owns one per_unit_accumulator per group key at each enabled level, and the
    buffer of mates waiting for their partner.
    """

    def __init__(self, levels, read_groups, collect_alignment_info=True, adapters=None,
                 max_insert_size=chimera_classifier.DEFAULT_INSERT_SIZE_LIMIT,
                 expected_orientations=chimera_classifier.DEFAULT_EXPECTED_ORIENTATIONS,
                 is_bisulfite=False, reference_available=True, logger=None):
        self.logger = logger if logger != None else logging.getLogger(__name__)
        self.levels = self.normalize_levels(levels)
        self.collect_alignment_info = collect_alignment_info
        self.adapters = list(adapters) if adapters != None else []
        self.max_insert_size = max_insert_size
        self.expected_orientations = frozenset(
            o if isinstance(o, pair_orientation) else pair_orientation(o)
            for o in expected_orientations
        )
        self.is_bisulfite = is_bisulfite
        self.reference_available = reference_available
        self.finished = False
        self.pending_mates = {}
        self.unknown_read_groups = set()
        self.read_groups = {rg.id: rg for rg in read_groups}
        if collect_alignment_info and not reference_available:
            self.logger.warning("No reference given; mismatch metrics will not be collected")
        self.all_reads = self.make_unit(metric_accumulation_level.ALL_READS, split_by_pairing=True)
        self.units = {level: {} for level in self.levels if level != metric_accumulation_level.ALL_READS}
        for rg in read_groups:
            for (level, units) in self.units.items():
                key = self.group_key(level, rg)
                if key != None and key not in units:
                    units[key] = self.make_unit(level, rg)
        self.logger.debug("Created %d accumulators", 1 + sum(len(u) for u in self.units.values()))

    @staticmethod
    def normalize_levels(levels):
        """Levels in canonical order; ALL_READS is always included"""
        requested = set(metric_accumulation_level(level) if not isinstance(level, metric_accumulation_level)
                        else level for level in levels)
        requested.add(metric_accumulation_level.ALL_READS)
        return [level for level in metric_accumulation_level if level in requested]

    @staticmethod
    def group_key(level, rg):
        """Key of the unit a read group belongs to at a level; None if the header lacks it"""
        if level == metric_accumulation_level.SAMPLE:
            return rg.sample
        elif level == metric_accumulation_level.LIBRARY:
            return (rg.sample, rg.library) if rg.library != None else None
        elif level == metric_accumulation_level.READ_GROUP:
            return rg.id
        return None

    def make_unit(self, level, rg=None, split_by_pairing=False):
        sample = None
        library = None
        read_group = None
        if level in (metric_accumulation_level.SAMPLE,
                     metric_accumulation_level.LIBRARY,
                     metric_accumulation_level.READ_GROUP):
            sample = rg.sample
        if level in (metric_accumulation_level.LIBRARY, metric_accumulation_level.READ_GROUP):
            library = rg.library
        if level == metric_accumulation_level.READ_GROUP:
            read_group = rg.id
        return per_unit_accumulator(level,
                                    sample=sample,
                                    library=library,
                                    read_group=read_group,
                                    collect_alignment_info=self.collect_alignment_info,
                                    adapters=self.adapters,
                                    is_bisulfite=self.is_bisulfite,
                                    reference_available=self.reference_available,
                                    split_by_pairing=split_by_pairing)

    def get_all_reads_unit(self):
        return self.all_reads

    def all_units(self):
        units = [self.all_reads]
        for level in self.levels:
            if level in self.units:
                units.extend(self.units[level].values())
        return units

    def units_for(self, record):
        units = [self.all_reads]
        if record.read_group == None:
            return units
        rg = self.read_groups.get(record.read_group)
        if rg == None:
            if record.read_group not in self.unknown_read_groups:
                self.unknown_read_groups.add(record.read_group)
                self.logger.warning("Read group '%s' is not in the header; " % record.read_group +
                                    "its reads are counted for ALL_READS only")
            return units
        for (level, level_units) in self.units.items():
            key = self.group_key(level, rg)
            if key != None:
                units.append(level_units[key])
        return units

    def resolve_mate(self, record):
        """
        Buffer the first mate of a mapped pair; when its partner arrives, remove
        it from the buffer and classify the pair.
        """
        if not self.collect_alignment_info or record.is_qcfail \
           or record.is_secondary_or_supplementary or not record.is_mapped_pair:
            return None
        mate = self.pending_mates.get(record.query_name)
        if mate == None or mate.is_read1 == record.is_read1:
            if mate != None:
                self.logger.debug("Replacing buffered read %s with a record for the same end",
                                  record.query_name)
            self.pending_mates[record.query_name] = record
            return None
        del self.pending_mates[record.query_name]
        verdict = chimera_classifier.classify(mate, record,
                                              self.max_insert_size,
                                              self.expected_orientations)
        orientation = None
        if mate.reference_id == record.reference_id:
            orientation = chimera_classifier.orientation(mate, record)
        return pair_result(verdict=verdict,
                           orientation=orientation,
                           eligible=chimera_classifier.is_eligible(mate, record))

    def accept_record(self, record, window=None):
        if self.finished:
            msg = "Cannot accept record %s: collector is already finished" % record.query_name
            self.logger.error(msg)
            raise RuntimeError(msg)
        pair = self.resolve_mate(record)
        for unit in self.units_for(record):
            unit.accept_record(record, window, pair)

    def finish(self):
        """
        Finalize every accumulator, exactly once.
        Return a list of metric rows and a list of histogram objects.
        """
        if self.finished:
            msg = "Collector is already finished"
            self.logger.error(msg)
            raise RuntimeError(msg)
        if len(self.pending_mates) > 0:
            self.logger.info("%d reads had no mate in the input; not classified for chimeras",
                             len(self.pending_mates))
        self.pending_mates.clear()
        rows = []
        results = []
        for unit in self.all_units():
            rows.append(unit.finalize())
            results.extend(unit.get_histograms())
        self.finished = True
        self.logger.debug("Finished alignment summary for %d units", len(rows))
        return (rows, results)
