"""
Memory-efficient BAM partitioning.

This module streams a coordinate-sorted BAM file and cuts it into record
partitions: one run of at most `records_per_shard` reads per shard, never
crossing a reference boundary, with reads lacking a coordinate last.
"""

from array import array
from dataclasses import dataclass
from typing import Iterator, Optional

import numpy as np
import pysam

from .errors import MalformedHeaderError
from .header_codec import HeaderMetadata
from .types import UNPLACED_REFERENCE_ID, Coordinate, RecordPartition, ShardKey


@dataclass
class BamStats:
    """BAM file statistics container."""

    total_reads: Optional[int]
    num_references: int
    path: str

    @classmethod
    def from_path(cls, bam_path: str) -> "BamStats":
        """
        Create BamStats using index statistics when an index is available.

        Without an index the read count stays unknown rather than forcing a full
        pass over the file.
        """
        with pysam.AlignmentFile(bam_path, "rb") as samfile:
            total_reads = None
            if samfile.has_index():
                stats = samfile.get_index_statistics()
                total_reads = sum(stat.total for stat in stats) + samfile.nocoordinate
            num_references = len(samfile.references)
        return cls(total_reads=total_reads, num_references=num_references, path=bam_path)


def calculate_total_chunks(total_reads: int, chunk_size: int) -> int:
    """Calculate total number of chunks needed for given read count and chunk size."""
    return (total_reads + chunk_size - 1) // chunk_size  # Ceiling division


def format_progress(
    chunk_num: int, total_chunks: Optional[int], reads_processed: int, rate: float = None
) -> str:
    """Format progress message for consistent logging."""
    base = f"Partition {chunk_num}:{total_chunks or '?'} | Reads: {reads_processed:8d}"
    if rate is not None:
        base += f" | Rate: {rate:6.0f} reads/sec"
    return base


def to_python_types(obj):
    """Recursively convert numpy types to Python types."""
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    elif isinstance(obj, np.integer):
        return int(obj)
    elif isinstance(obj, np.floating):
        return float(obj)
    elif isinstance(obj, np.bool_):
        return bool(obj)
    elif isinstance(obj, dict):
        return {k: to_python_types(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [to_python_types(item) for item in obj]
    else:
        return obj


def serialize_read(read: pysam.AlignedSegment) -> dict:
    """
    Convert a pysam AlignedSegment to a picklable dictionary.

    Keeps every field needed to re-encode the record, aux tags included.
    """
    qualities = read.query_qualities
    read_dict = {
        "query_name": read.query_name,
        "flag": read.flag,
        "reference_id": read.reference_id,
        "reference_start": read.reference_start,
        "mapping_quality": read.mapping_quality,
        "cigarstring": read.cigarstring,
        "next_reference_id": read.next_reference_id,
        "next_reference_start": read.next_reference_start,
        "template_length": read.template_length,
        "query_sequence": read.query_sequence,
        "query_qualities": None if qualities is None else list(qualities),
        "tags": [list(tag) for tag in read.get_tags(with_value_type=True)],
    }
    return to_python_types(read_dict)


def deserialize_read(read: dict, header: pysam.AlignmentHeader) -> pysam.AlignedSegment:
    """Rebuild an AlignedSegment from the output of serialize_read."""
    segment = pysam.AlignedSegment(header)
    segment.query_name = read["query_name"]
    segment.flag = read["flag"]
    segment.reference_id = read["reference_id"]
    segment.reference_start = read["reference_start"]
    segment.mapping_quality = read["mapping_quality"]
    segment.cigarstring = read["cigarstring"]
    segment.next_reference_id = read["next_reference_id"]
    segment.next_reference_start = read["next_reference_start"]
    segment.template_length = read["template_length"]
    # Setting the sequence resets the qualities, so it goes first
    segment.query_sequence = read["query_sequence"]
    if read["query_qualities"] is not None:
        segment.query_qualities = array("B", read["query_qualities"])
    for tag, value, value_type in read["tags"]:
        segment.set_tag(tag, value, value_type)
    return segment


def read_header(bam_path: str) -> HeaderMetadata:
    """
    Build the broadcast header of a BAM file.

    The anchor is the first read with a reference, which is also the first
    read of the output since the input is coordinate-sorted.
    """
    with pysam.AlignmentFile(bam_path, "rb") as samfile:
        text = str(samfile.header)
        for read in samfile.fetch(until_eof=True):
            if read.reference_id != UNPLACED_REFERENCE_ID:
                anchor = Coordinate(read.reference_name, max(read.reference_start, 0))
                break
        else:
            raise MalformedHeaderError(f"{bam_path} has no read with a coordinate to anchor on")

    header = HeaderMetadata(text=text, anchor=anchor)
    header.validate()
    return header


def _sort_position(read: pysam.AlignedSegment):
    if read.reference_id == UNPLACED_REFERENCE_ID:
        return (True, 0, 0)
    return (False, read.reference_id, read.reference_start)


def stream_partitions(bam_path: str, records_per_shard: int = 100_000) -> Iterator[RecordPartition]:
    """
    Yield record partitions in output order.

    Raises ValueError if the input is not coordinate-sorted, because the index
    built over the concatenated shards would be invalid.
    """
    if records_per_shard < 1:
        raise ValueError("records_per_shard must be at least 1")

    with pysam.AlignmentFile(bam_path, "rb") as samfile:
        current: Optional[RecordPartition] = None
        previous = None

        for read in samfile.fetch(until_eof=True):
            position = _sort_position(read)
            if previous is not None and position < previous:
                raise ValueError(
                    f"{bam_path} is not coordinate-sorted at read {read.query_name}"
                )
            previous = position

            reference_id = read.reference_id
            if current is None or current.key.reference_id != reference_id:
                if current is not None:
                    yield current
                current = RecordPartition(
                    key=ShardKey(reference_id, 0, read.reference_start), reads=[]
                )
            elif len(current.reads) >= records_per_shard:
                yield current
                current = RecordPartition(
                    key=ShardKey(reference_id, current.key.ordinal + 1, read.reference_start),
                    reads=[],
                )

            current.reads.append(serialize_read(read))

        if current is not None:
            yield current
