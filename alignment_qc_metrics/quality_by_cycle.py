"""Mean base quality by sequencing cycle"""

from alignment_qc_metrics.histograms import histogram


class quality_totals(object):

    """Quality sums and base counts by cycle, for first and second reads"""

    def __init__(self, use_original_qualities):
        self.use_original_qualities = use_original_qualities
        self.first_totals = {}
        self.first_counts = {}
        self.second_totals = {}
        self.second_counts = {}

    def add_record(self, record):
        quals = record.original_qualities if self.use_original_qualities else record.query_qualities
        if quals == None:
            return
        length = len(quals)
        if record.is_paired and record.is_read2:
            (totals, counts) = (self.second_totals, self.second_counts)
        else:
            (totals, counts) = (self.first_totals, self.first_counts)
        for i in range(length):
            cycle = length - i if record.is_reverse else i + 1
            totals[cycle] = totals.get(cycle, 0) + quals[i]
            counts[cycle] = counts.get(cycle, 0) + 1

    def is_empty(self):
        return len(self.first_counts) == 0 and len(self.second_counts) == 0

    def mean_quality_histogram(self):
        """Second read cycles follow on from the longest first read"""
        label = 'MEAN_ORIGINAL_QUALITY' if self.use_original_qualities else 'MEAN_QUALITY'
        bins = {}
        first_length = max(self.first_counts.keys()) if len(self.first_counts) > 0 else 0
        for (cycle, count) in self.first_counts.items():
            bins[cycle] = float(self.first_totals[cycle]) / count
        for (cycle, count) in self.second_counts.items():
            bins[cycle + first_length] = float(self.second_totals[cycle]) / count
        return histogram('CYCLE', label, bins)


class quality_by_cycle_collector(object):

    def __init__(self, aligned_reads_only=False, pf_reads_only=False):
        self.aligned_reads_only = aligned_reads_only
        self.pf_reads_only = pf_reads_only
        self.q = quality_totals(False)
        self.oq = quality_totals(True)
        self.finished = False

    def accept_record(self, record, window=None):
        if self.finished:
            raise RuntimeError("Cannot accept record %s: collector is already finished"
                               % record.query_name)
        if self.pf_reads_only and record.is_qcfail:
            return
        if self.aligned_reads_only and record.is_unmapped:
            return
        if record.is_secondary_or_supplementary:
            return
        self.q.add_record(record)
        self.oq.add_record(record)

    def is_empty(self):
        return self.q.is_empty() and self.oq.is_empty()

    def finish(self):
        """Return the mean quality histogram, and the original quality histogram if OQ tags were seen"""
        if self.finished:
            raise RuntimeError("Collector is already finished")
        self.finished = True
        results = [self.q.mean_quality_histogram()]
        if not self.oq.is_empty():
            results.append(self.oq.mean_quality_histogram())
        return results
