"""Classify mapped read pairs as normal or chimeric"""

from enum import Enum


class pair_orientation(Enum):
    FR = 'FR' # mates point towards each other
    RF = 'RF' # mates point away from each other
    TANDEM = 'TANDEM' # both mates on the same strand


class chimera_verdict(Enum):
    NORMAL = 'NORMAL'
    CHIMERIC = 'CHIMERIC'


class chimera_classifier(object):

    MIN_MAPQ = 20
    DEFAULT_INSERT_SIZE_LIMIT = 100000
    DEFAULT_EXPECTED_ORIENTATIONS = frozenset([pair_orientation.FR])

    @classmethod
    def is_eligible(klass, mate1, mate2):
        """Both mates paired and mapped, with mapping quality at least MIN_MAPQ"""
        for mate in (mate1, mate2):
            if not mate.is_paired or mate.is_unmapped:
                return False
            if mate.mapping_quality == None or mate.mapping_quality < klass.MIN_MAPQ:
                return False
        return True

    @staticmethod
    def orientation(mate1, mate2):
        if mate1.is_reverse == mate2.is_reverse:
            return pair_orientation.TANDEM
        if mate1.is_reverse:
            (positive, negative) = (mate2, mate1)
        else:
            (positive, negative) = (mate1, mate2)
        # compare 5' ends: start of the positive strand mate, last aligned base of the other
        if positive.reference_start < negative.reference_end - 1:
            return pair_orientation.FR
        return pair_orientation.RF

    @staticmethod
    def insert_size(mate1, mate2):
        """Absolute insert size; 0 for mates on different contigs"""
        if mate1.reference_id != mate2.reference_id:
            return 0
        size = max(abs(mate1.template_length), abs(mate2.template_length))
        if size == 0:
            # template length not set by the aligner; use the outer span of the pair
            start = min(mate1.reference_start, mate2.reference_start)
            end = max(mate1.reference_end, mate2.reference_end)
            size = end - start
        return size

    @classmethod
    def classify(klass, mate1, mate2, max_insert_size=None, expected_orientations=None):
        """
        Pairs failing the mapping quality threshold are always NORMAL.
        Otherwise the pair is CHIMERIC if any of these hold:
        - either mate has a supplementary alignment (SA tag)
        - the mates map to different contigs
        - the insert size exceeds max_insert_size
        - the pair orientation is not one of expected_orientations
        """
        if max_insert_size == None:
            max_insert_size = klass.DEFAULT_INSERT_SIZE_LIMIT
        if expected_orientations == None:
            expected_orientations = klass.DEFAULT_EXPECTED_ORIENTATIONS
        if not klass.is_eligible(mate1, mate2):
            return chimera_verdict.NORMAL
        if mate1.supplementary_alignment != None or mate2.supplementary_alignment != None:
            return chimera_verdict.CHIMERIC
        if mate1.reference_id != mate2.reference_id:
            return chimera_verdict.CHIMERIC
        if klass.insert_size(mate1, mate2) > max_insert_size:
            return chimera_verdict.CHIMERIC
        if klass.orientation(mate1, mate2) not in expected_orientations:
            return chimera_verdict.CHIMERIC
        return chimera_verdict.NORMAL
