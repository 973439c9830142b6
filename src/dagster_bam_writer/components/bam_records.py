"""
Record positions in a BGZF-compressed BAM.

Index shards need to know where every record sits, both on its reference and
in the compressed file. pysam reads the records; its tell() reports virtual
offsets (compressed block offset << 16 | offset within the block), exactly
what htslib stores in a BAI.
"""

from typing import Iterator, NamedTuple

import pysam

# Fixed empty block marking end-of-file
BGZF_EOF = bytes.fromhex("1f8b08040000000000ff0600424302001b0003000000000000000000")

UNMAPPED_FLAG = 0x4


class RecordSpan(NamedTuple):
    """Where one record sits, both on the reference and in the BGZF file."""

    reference_id: int
    start: int
    end: int
    flag: int
    bin: int
    voffset_start: int
    voffset_end: int


def reg2bin(beg: int, end: int) -> int:
    """Smallest UCSC bin fully containing the 0-based half-open [beg, end)."""
    end -= 1
    if beg >> 14 == end >> 14:
        return ((1 << 15) - 1) // 7 + (beg >> 14)
    if beg >> 17 == end >> 17:
        return ((1 << 12) - 1) // 7 + (beg >> 17)
    if beg >> 20 == end >> 20:
        return ((1 << 9) - 1) // 7 + (beg >> 20)
    if beg >> 23 == end >> 23:
        return ((1 << 6) - 1) // 7 + (beg >> 23)
    if beg >> 26 == end >> 26:
        return ((1 << 3) - 1) // 7 + (beg >> 26)
    return 0


def record_span(read: pysam.AlignedSegment, voffset_start: int, voffset_end: int) -> RecordSpan:
    # Unmapped reads and reads without reference-consuming CIGAR ops cover one base
    start = read.reference_start
    length = 0 if read.is_unmapped else (read.reference_length or 0)
    end = start + max(length, 1)
    return RecordSpan(
        reference_id=read.reference_id,
        start=start,
        end=end,
        flag=read.flag,
        bin=reg2bin(start, end),
        voffset_start=voffset_start,
        voffset_end=voffset_end,
    )


def scan_records(bam_path: str, start: int, end: int) -> Iterator[RecordSpan]:
    """
    Yield the records held in the BGZF blocks at compressed offsets [start, end).

    A range starting at 0 begins after the BAM header. A record ending exactly
    at a block boundary gets the next block's offset as its end, as htslib
    reports it.
    """
    if start >= end:
        return

    with pysam.AlignmentFile(bam_path, "rb", check_sq=False) as samfile:
        if start > 0:
            samfile.seek(start << 16)
        voffset = samfile.tell()

        while voffset >> 16 < end:
            try:
                read = next(samfile)
            except StopIteration:
                break

            next_voffset = samfile.tell()
            if next_voffset >> 16 > end or (next_voffset >> 16 == end and next_voffset & 0xFFFF):
                raise ValueError(
                    f"Record {read.query_name} runs past the end of range [{start}, {end})"
                )
            yield record_span(read, voffset, next_voffset)
            voffset = next_voffset
