"""
Index Shard Writer Component

Builds the BAI entry of one reference by scanning that reference's byte range
of the concatenated BAM. The range comes from the aggregated per-reference
shard sizes, so this can only run once the data file is complete and every
data shard has reported.
"""

import logging
import os
import struct
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import dagster
from dagster import OpExecutionContext, op

from .bam_records import BGZF_EOF, UNMAPPED_FLAG, RecordSpan, scan_records
from .errors import AggregationMismatch, StageBarrierError, WriteFailure
from .header_codec import HeaderCodec, HeaderMetadata
from .statistics import FinalStatistics
from .types import UNPLACED_REFERENCE_ID, FinalDataFile, ShardKey, Stage, WriteRequest

logger = logging.getLogger(__name__)

BAI_MAGIC = b"BAI\x01"
PSEUDO_BIN = 37450
LINEAR_INDEX_SHIFT = 14
INDEX_SHARD_DIRECTORY = "bai-shards"


@dataclass(frozen=True)
class IndexShardResult:
    key: ShardKey
    path: str
    no_coordinate_count: int


class ReferenceIndex:
    """Bins, chunks and linear index of a single reference."""

    def __init__(self):
        self.bins: Dict[int, List[List[int]]] = {}
        self.linear: Dict[int, int] = {}
        self.first_offset: Optional[int] = None
        self.last_offset: Optional[int] = None
        self.mapped = 0
        self.unmapped = 0

    def add(self, span: RecordSpan) -> None:
        chunks = self.bins.setdefault(span.bin, [])
        if chunks and chunks[-1][1] == span.voffset_start:
            chunks[-1][1] = span.voffset_end
        else:
            chunks.append([span.voffset_start, span.voffset_end])

        for window in range(span.start >> LINEAR_INDEX_SHIFT, ((span.end - 1) >> LINEAR_INDEX_SHIFT) + 1):
            self.linear.setdefault(window, span.voffset_start)

        if self.first_offset is None:
            self.first_offset = span.voffset_start
        self.last_offset = span.voffset_end

        if span.flag & UNMAPPED_FLAG:
            self.unmapped += 1
        else:
            self.mapped += 1

    def linear_offsets(self) -> List[int]:
        if not self.linear:
            return []
        offsets = [0] * (max(self.linear) + 1)
        following = self.linear[max(self.linear)]
        # Windows no record overlaps take the offset of the next populated one
        for window in range(len(offsets) - 1, -1, -1):
            following = self.linear.get(window, following)
            offsets[window] = following
        return offsets

    def encode(self) -> bytes:
        if self.first_offset is None:
            return struct.pack("<ii", 0, 0)

        parts = [struct.pack("<i", len(self.bins) + 1)]
        for bin_, chunks in sorted(self.bins.items()):
            parts.append(struct.pack("<Ii", bin_, len(chunks)))
            parts.extend(struct.pack("<QQ", start, end) for start, end in chunks)
        parts.append(struct.pack("<Ii", PSEUDO_BIN, 2))
        parts.append(struct.pack("<QQ", self.first_offset, self.last_offset))
        parts.append(struct.pack("<QQ", self.mapped, self.unmapped))

        offsets = self.linear_offsets()
        parts.append(struct.pack(f"<i{len(offsets)}Q", len(offsets), *offsets))
        return b"".join(parts)


def check_index_inputs(data_file: FinalDataFile, statistics: FinalStatistics) -> None:
    """Refuse to index against partial statistics or an unfinished data file."""
    if not isinstance(statistics, FinalStatistics):
        raise StageBarrierError("Index shards need finalized statistics from every data shard")
    if not os.path.isfile(data_file.staged_path):
        raise StageBarrierError(f"Data file {data_file.staged_path} does not exist yet")
    actual = os.path.getsize(data_file.staged_path)
    if actual != data_file.size:
        raise StageBarrierError(
            f"Data file {data_file.staged_path} is {actual} bytes, expected {data_file.size}"
        )
    if sum(statistics.reference_sizes.values()) + len(BGZF_EOF) > data_file.size:
        raise AggregationMismatch(
            f"Aggregated shard sizes exceed the data file size of {data_file.size} bytes"
        )


def reference_byte_range(
    reference_id: int, data_file: FinalDataFile, statistics: FinalStatistics
) -> Tuple[int, int]:
    """
    Compressed [start, end) of a reference's shards in the data file.

    The last reference also covers the trailing shards of records without a
    coordinate, up to the terminal block.
    """
    start = statistics.offset_of(reference_id)
    if reference_id == statistics.reference_count - 1:
        return start, data_file.size - len(BGZF_EOF)
    return start, start + statistics.size_of(reference_id)


def build_reference_index(
    reference_id: int, data_file: FinalDataFile, statistics: FinalStatistics
) -> Tuple[ReferenceIndex, int]:
    """Scan one reference's range, returning its index and no-coordinate count."""
    start, end = reference_byte_range(reference_id, data_file, statistics)
    index = ReferenceIndex()
    no_coordinate_count = 0

    for span in scan_records(data_file.staged_path, start, end):
        if span.reference_id == reference_id:
            index.add(span)
        elif span.reference_id == UNPLACED_REFERENCE_ID:
            no_coordinate_count += 1
        else:
            raise AggregationMismatch(
                f"Record on reference id {span.reference_id} found in the "
                f"byte range [{start}, {end}) of reference id {reference_id}"
            )

    logger.debug(
        "Reference %d: %d mapped, %d unmapped, %d without coordinate",
        reference_id,
        index.mapped,
        index.unmapped,
        no_coordinate_count,
    )
    return index, no_coordinate_count


def write_index_shard(
    header: HeaderMetadata,
    data_file: FinalDataFile,
    statistics: FinalStatistics,
    reference_id: int,
    directory: str,
) -> IndexShardResult:
    """Write the BAI entry of one reference; reference 0 also opens the BAI."""
    check_index_inputs(data_file, statistics)
    reference_count = len(header.references)
    if statistics.reference_count != reference_count:
        raise AggregationMismatch(
            f"Statistics cover {statistics.reference_count} references, header has {reference_count}"
        )
    if not 0 <= reference_id < reference_count:
        raise AggregationMismatch(f"No reference id {reference_id} in the header")

    index, no_coordinate_count = build_reference_index(reference_id, data_file, statistics)

    content = index.encode()
    if reference_id == 0:
        content = BAI_MAGIC + struct.pack("<i", reference_count) + content

    key = ShardKey(reference_id=reference_id)
    path = os.path.join(directory, f"{key.name}.bai")
    temp_path = path + ".tmp"
    try:
        os.makedirs(directory, exist_ok=True)
        with open(temp_path, "wb") as handle:
            handle.write(content)
        os.replace(temp_path, path)
    except OSError as e:
        raise WriteFailure(f"Failed to write index shard {key.name} to {path}: {e}") from e

    return IndexShardResult(key=key, path=path, no_coordinate_count=no_coordinate_count)


class IndexShardWriter(dagster.Model, dagster.Resolvable):
    """Op component that writes one BAI shard per reference."""

    name: str = "write_index_shard"

    def build_defs(self, context):
        codec = HeaderCodec()

        @op(
            name=self.name,
            tags=Stage.WRITE_INDEX_SHARDS.tags,
            description="Indexes one reference of the concatenated BAM",
        )
        def write_index_shard_op(
            context: OpExecutionContext,
            request: WriteRequest,
            header: str,
            data_file: FinalDataFile,
            statistics: FinalStatistics,
            reference_id: int,
        ) -> IndexShardResult:
            context.log.info(f"🔄 Indexing reference {reference_id} of {data_file.path}")
            try:
                result = write_index_shard(
                    codec.decode(header),
                    data_file,
                    statistics,
                    reference_id,
                    request.shard_directory(INDEX_SHARD_DIRECTORY),
                )
            except Exception as e:
                context.log.error(f"✗ Failed to index reference {reference_id}: {e}")
                raise

            context.log.info(
                f"✓ Index shard {result.key.name} written, "
                f"{result.no_coordinate_count} reads without coordinate"
            )
            return result

        return write_index_shard_op
