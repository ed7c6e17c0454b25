"""Read records, read groups and reference windows consumed by the collectors"""

import attr


class cigar_constants(object):
    """
    SAM/pysam CIGAR operation codes
    """

    MATCH = 0
    INSERTION = 1
    DELETION = 2
    SKIP = 3
    SOFT_CLIP = 4
    HARD_CLIP = 5
    PAD = 6
    EQUAL = 7
    DIFF = 8
    # CIGAR op indices which increment the query cycle
    CONSUMES_QUERY = set([0, 1, 4, 7, 8])
    CONSUMES_REFERENCE = set([0, 2, 3, 7, 8])
    ALIGNED = set([0, 7, 8])

    # pysam reports an unavailable mapping quality as 255
    MAPQ_UNAVAILABLE = 255


@attr.s(frozen=True, slots=True)
class read_group(object):
    """One @RG header line; sample and library may be absent"""

    id = attr.ib()
    sample = attr.ib(default=None)
    library = attr.ib(default=None)
    platform_unit = attr.ib(default=None)

    @classmethod
    def from_header(klass, header):
        """Read groups from a pysam.AlignmentHeader, in header order"""
        header_dict = header.to_dict() if hasattr(header, 'to_dict') else header
        groups = []
        for rg in header_dict.get('RG', []):
            groups.append(klass(id=rg['ID'],
                                sample=rg.get('SM'),
                                library=rg.get('LB'),
                                platform_unit=rg.get('PU')))
        return groups


@attr.s(frozen=True, slots=True)
class reference_window(object):
    """
    Reference bases spanning the alignment of one record.
    'start' is the 0-based reference position of the first base.
    """

    start = attr.ib()
    bases = attr.ib()

    def base_at(self, ref_pos):
        offset = ref_pos - self.start
        if offset < 0 or offset >= len(self.bases):
            return None
        return self.bases[offset]


@attr.s(frozen=True, slots=True)
class aligned_record(cigar_constants):
    """
    One aligned or unaligned read, reduced to the fields the collectors use.
    Coordinates are 0-based, as in pysam.
    """

    query_name = attr.ib()
    is_paired = attr.ib(default=False)
    is_read1 = attr.ib(default=False)
    is_read2 = attr.ib(default=False)
    is_unmapped = attr.ib(default=True)
    mate_is_unmapped = attr.ib(default=True)
    is_reverse = attr.ib(default=False)
    mate_is_reverse = attr.ib(default=False)
    is_secondary = attr.ib(default=False)
    is_supplementary = attr.ib(default=False)
    is_qcfail = attr.ib(default=False)
    is_duplicate = attr.ib(default=False)
    is_proper_pair = attr.ib(default=False)
    is_noise = attr.ib(default=False)
    mapping_quality = attr.ib(default=None)
    mate_mapping_quality = attr.ib(default=None)
    reference_id = attr.ib(default=-1)
    reference_start = attr.ib(default=-1)
    next_reference_id = attr.ib(default=-1)
    next_reference_start = attr.ib(default=-1)
    template_length = attr.ib(default=0)
    cigar = attr.ib(default=(), converter=tuple)
    query_sequence = attr.ib(default=None)
    query_qualities = attr.ib(default=None)
    original_qualities = attr.ib(default=None)
    read_group = attr.ib(default=None)
    supplementary_alignment = attr.ib(default=None)

    @classmethod
    def from_segment(klass, read):
        """Convert a pysam.AlignedSegment"""
        mapq = read.mapping_quality
        if read.is_unmapped or mapq == klass.MAPQ_UNAVAILABLE:
            mapq = None
        quals = read.query_qualities
        oq = read.get_tag('OQ') if read.has_tag('OQ') else None
        return klass(
            query_name=read.query_name,
            is_paired=read.is_paired,
            is_read1=read.is_read1,
            is_read2=read.is_read2,
            is_unmapped=read.is_unmapped,
            mate_is_unmapped=read.mate_is_unmapped,
            is_reverse=read.is_reverse,
            mate_is_reverse=read.mate_is_reverse,
            is_secondary=read.is_secondary,
            is_supplementary=read.is_supplementary,
            is_qcfail=read.is_qcfail,
            is_duplicate=read.is_duplicate,
            is_proper_pair=read.is_proper_pair,
            is_noise=read.has_tag('XN') and read.get_tag('XN') == 1,
            mapping_quality=mapq,
            mate_mapping_quality=read.get_tag('MQ') if read.has_tag('MQ') else None,
            reference_id=read.reference_id,
            reference_start=read.reference_start,
            next_reference_id=read.next_reference_id,
            next_reference_start=read.next_reference_start,
            template_length=read.template_length,
            cigar=read.cigartuples if read.cigartuples != None else (),
            query_sequence=read.query_sequence,
            query_qualities=tuple(quals) if quals != None else None,
            original_qualities=tuple(ord(c) - 33 for c in oq) if oq != None else None,
            read_group=read.get_tag('RG') if read.has_tag('RG') else None,
            supplementary_alignment=read.get_tag('SA') if read.has_tag('SA') else None,
        )

    @property
    def read_length(self):
        return len(self.query_sequence) if self.query_sequence else 0

    @property
    def is_secondary_or_supplementary(self):
        return self.is_secondary or self.is_supplementary

    @property
    def is_mapped_pair(self):
        """Paired, with both this read and its mate mapped"""
        return self.is_paired and not self.is_unmapped and not self.mate_is_unmapped

    @property
    def alignment_blocks(self):
        """List of (read offset, reference start, length) for each gapless aligned run"""
        blocks = []
        read_offset = 0
        ref_pos = self.reference_start
        for (op, length) in self.cigar:
            if op in self.ALIGNED:
                blocks.append((read_offset, ref_pos, length))
                read_offset += length
                ref_pos += length
            elif op in self.CONSUMES_QUERY:
                read_offset += length
            elif op in self.CONSUMES_REFERENCE:
                ref_pos += length
        return blocks

    @property
    def reference_end(self):
        """0-based exclusive end of the alignment on the reference"""
        span = sum(length for (op, length) in self.cigar if op in self.CONSUMES_REFERENCE)
        return self.reference_start + span

    @property
    def query_length_from_cigar(self):
        """Bases the CIGAR says are in SEQ; defined even when SEQ is *"""
        return sum(length for (op, length) in self.cigar if op in self.CONSUMES_QUERY)

    @property
    def aligned_bases(self):
        return sum(length for (op, length) in self.cigar if op in self.ALIGNED)

    @property
    def indel_count(self):
        """Number of insertion and deletion events, not bases"""
        return len([op for (op, length) in self.cigar if op in (self.INSERTION, self.DELETION)])

    def clipped_bases(self, op):
        return sum(length for (cigar_op, length) in self.cigar if cigar_op == op)

    def cycle(self, read_offset):
        """1-based sequencing cycle of a read offset; reverse strand reads run backwards"""
        if self.is_reverse:
            return self.read_length - read_offset
        return read_offset + 1
