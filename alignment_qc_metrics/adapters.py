"""Detect reads whose leading bases are sequencing adapter"""

COMPLEMENT = str.maketrans('ACGTNacgtn', 'TGCANtgcan')


def reverse_complement(bases):
    return bases.translate(COMPLEMENT)[::-1]


class illumina_adapters(object):
    """
    Illumina adapter pairs as (5' adapter, 3' adapter)
    """

    SINGLE_END = (
        'AATGATACGGCGACCACCGACAGGTTCAGAGTTCTACAGTCCGACG',
        'ATCTCGTATGCCGTCTTCTGCTTG'
    )
    PAIRED_END = (
        'AATGATACGGCGACCACCGAGATCTACACTCTTTCCCTACACGACGCTCTTCCGATCT',
        'AGATCGGAAGAGCGGTTCAGCAGGAATGCCGAGACCGATCTCGTATGCCGTCTTCTGCTTG'
    )
    INDEXED = (
        'AATGATACGGCGACCACCGAGATCTACACTCTTTCCCTACACGACGCTCTTCCGATCT',
        'AGATCGGAAGAGCACACGTCTGAACTCCAGTCACNNNNNNNNATCTCGTATGCCGTCTTCTGCTTG'
    )

    @classmethod
    def default_adapter_sequences(klass):
        """5' adapters are reverse complemented, so every sequence is in read order"""
        sequences = []
        for (five_prime, three_prime) in (klass.SINGLE_END, klass.PAIRED_END, klass.INDEXED):
            sequences.append(reverse_complement(five_prime))
            sequences.append(three_prime)
        return sequences


class adapter_matcher(object):

    ADAPTER_MATCH_LENGTH = 16 # bases compared, at most
    MIN_ADAPTER_MATCH_LENGTH = 12 # shorter comparisons never match
    MAX_ADAPTER_ERRORS = 1
    NO_CALL = 'N'

    @classmethod
    def is_adapter(klass, read_bases, adapters):
        """
        True if the start of read_bases matches the start of any adapter.

        Compares min(read length, adapter length, ADAPTER_MATCH_LENGTH) bases,
        case-insensitive, with N in either sequence matching anything.
        """
        if not read_bases:
            return False
        read_bases = read_bases.upper()
        for adapter in adapters:
            compare_length = min(len(read_bases), len(adapter), klass.ADAPTER_MATCH_LENGTH)
            if compare_length < klass.MIN_ADAPTER_MATCH_LENGTH:
                continue
            adapter = adapter.upper()
            errors = 0
            for i in range(compare_length):
                read_base = read_bases[i]
                adapter_base = adapter[i]
                if read_base == klass.NO_CALL or adapter_base == klass.NO_CALL:
                    continue
                if read_base != adapter_base:
                    errors += 1
                    if errors > klass.MAX_ADAPTER_ERRORS:
                        break
            if errors <= klass.MAX_ADAPTER_ERRORS:
                return True
        return False
