"""
BAM Shard Writer Component

Writes one record partition as a run of BGZF blocks that the concatenator can
join byte for byte: no terminal block, and no BAM header unless the shard
opens the output. Reports how many compressed bytes it contributed per
reference.
"""

import logging
import os
import tempfile
from dataclasses import dataclass
from typing import Optional

import dagster
import pysam
from dagster import OpExecutionContext, op

from .bam_records import BGZF_EOF
from .errors import WriteFailure
from .header_codec import HeaderCodec, HeaderMetadata
from .statistics import ShardStatistics
from .stream_bam import deserialize_read
from .types import UNPLACED_REFERENCE_ID, RecordPartition, ShardKey, Stage, WriteRequest

logger = logging.getLogger(__name__)

DATA_SHARD_DIRECTORY = "bam-shards"
COPY_BUFFER_SIZE = 4 * 1024 * 1024


@dataclass(frozen=True)
class ShardResult:
    """Path of a written shard (None for an empty partition) and its statistics."""

    key: ShardKey
    path: Optional[str]
    statistics: ShardStatistics


def carries_header(key: ShardKey, header: HeaderMetadata) -> bool:
    """The first shard of the anchor's reference opens the BAM with its header."""
    return key.reference_id == header.anchor_reference_id and key.ordinal == 0


def _copy_shard_bytes(bam_path: str, path: str, start: int) -> int:
    """
    Copy a finished BAM minus its first `start` bytes and its terminal block.

    Returns the number of bytes written to path.
    """
    end = os.path.getsize(bam_path) - len(BGZF_EOF)
    if end < start:
        raise WriteFailure(f"{bam_path} is shorter than its own header")

    temp_path = path + ".tmp"
    try:
        with open(bam_path, "rb") as source:
            source.seek(end)
            if source.read() != BGZF_EOF:
                raise WriteFailure(f"{bam_path} does not end with a BGZF terminal block")

            source.seek(start)
            remaining = end - start
            with open(temp_path, "wb") as out:
                while remaining:
                    chunk = source.read(min(COPY_BUFFER_SIZE, remaining))
                    if not chunk:
                        raise WriteFailure(f"{bam_path} shrank while being copied")
                    out.write(chunk)
                    remaining -= len(chunk)
        os.replace(temp_path, path)
    except BaseException:
        if os.path.exists(temp_path):
            os.remove(temp_path)
        raise
    return end - start


def write_shard(
    partition: RecordPartition,
    header: HeaderMetadata,
    directory: str,
    compression_level: int = 6,
) -> ShardResult:
    """
    Write one partition to <directory>/<shard key>.bam.

    pysam writes a complete BAM first; the shard keeps only the record blocks,
    plus the header blocks for the shard that opens the output. The file
    appears under its final name only once fully written, so a failed write
    leaves no shard behind. Re-running with the same inputs produces the same
    bytes.
    """
    key = partition.key
    if not partition.reads:
        logger.debug("Partition %s is empty, no shard written", key.name)
        return ShardResult(key=key, path=None, statistics=ShardStatistics.zero())

    no_coordinate_count = 0
    for read in partition.reads:
        reference_id = read.get("reference_id", UNPLACED_REFERENCE_ID)
        if reference_id == UNPLACED_REFERENCE_ID:
            no_coordinate_count += 1
        elif reference_id != key.reference_id:
            raise ValueError(
                f"Read {read.get('query_name')} on reference id {reference_id} "
                f"does not belong to shard {key.name}"
            )

    alignment_header = pysam.AlignmentHeader.from_text(header.text)
    path = os.path.join(directory, f"{key.name}.bam")
    try:
        os.makedirs(directory, exist_ok=True)
        fd, bam_path = tempfile.mkstemp(prefix=f".{key.name}.", suffix=".bam", dir=directory)
        os.close(fd)
        try:
            with pysam.AlignmentFile(
                bam_path,
                "wb",
                header=alignment_header,
                format_options=[f"level={compression_level}"],
            ) as out:
                # htslib flushes the header into blocks of its own
                records_start = out.tell()
                for read in partition.reads:
                    out.write(deserialize_read(read, alignment_header))

            if records_start & 0xFFFF:
                raise WriteFailure(f"Header of shard {key.name} does not end on a BGZF block")
            start = 0 if carries_header(key, header) else records_start >> 16
            size = _copy_shard_bytes(bam_path, path, start)
        finally:
            if os.path.exists(bam_path):
                os.remove(bam_path)
    except OSError as e:
        raise WriteFailure(f"Failed to write shard {key.name} to {path}: {e}") from e

    logger.debug("Shard %s: %d bytes from offset %d", key.name, size, start)
    sizes = {} if key.is_unplaced else {key.reference_id: size}
    return ShardResult(
        key=key,
        path=path,
        statistics=ShardStatistics(
            reference_sizes=sizes,
            no_coordinate_count=no_coordinate_count,
            shard_count=1,
        ),
    )


class BamShardWriter(dagster.Model, dagster.Resolvable):
    """
    Op component that writes one BAM shard per mapped partition.

    Each invocation owns its output file and its statistics; siblings share
    nothing but the broadcast header.
    """

    name: str = "write_data_shard"
    compression_level: int = 6

    def build_defs(self, context):
        codec = HeaderCodec()

        @op(
            name=self.name,
            tags=Stage.WRITE_DATA_SHARDS.tags,
            description="Writes one partition of reads as a BGZF shard",
        )
        def write_data_shard_op(
            context: OpExecutionContext,
            request: WriteRequest,
            header: str,
            partition: RecordPartition,
        ) -> ShardResult:
            key = partition.key
            context.log.info(f"🔄 Writing shard {key.name} with {len(partition.reads)} reads")

            try:
                result = write_shard(
                    partition,
                    codec.decode(header),
                    request.shard_directory(DATA_SHARD_DIRECTORY),
                    self.compression_level,
                )
            except Exception as e:
                context.log.error(f"✗ Failed to write shard {key.name}: {e}")
                raise

            if result.path is None:
                context.log.info(f"Shard {key.name} is empty, nothing written")
            else:
                context.log.info(
                    f"✓ Shard {key.name}: {result.statistics.reference_sizes} bytes, "
                    f"{result.statistics.no_coordinate_count} reads without coordinate"
                )
            return result

        return write_data_shard_op
