"""
BAM Partitioner Component

A reusable op component that streams the input BAM into record partitions
without loading it into memory, yielding one dynamic output per shard.
"""

import time
from typing import Iterator

import dagster
from dagster import DynamicOut, DynamicOutput, OpExecutionContext, op

from .stream_bam import BamStats, calculate_total_chunks, format_progress, stream_partitions
from .types import RecordPartition, Stage, WriteRequest


class BamPartitioner(dagster.Model, dagster.Resolvable):
    """
    Op component that fans the input BAM out into shard partitions.

    Partitions never span two references, so each shard's compressed size can
    be credited to exactly one reference.
    """

    name: str = "partition_reads"
    records_per_shard: int = 100_000

    def build_defs(self, context):
        @op(
            name=self.name,
            out=DynamicOut(RecordPartition),
            tags=Stage.WRITE_DATA_SHARDS.tags,
            description="Streams the input BAM into per-shard record partitions",
        )
        def partition_reads(
            context: OpExecutionContext, request: WriteRequest
        ) -> Iterator[DynamicOutput[RecordPartition]]:
            bam_path = request.input_bam
            records_per_shard = self.records_per_shard

            context.log.info(f"Starting partitioning of: {bam_path}")

            stats = BamStats.from_path(bam_path)
            total_chunks = None
            if stats.total_reads is not None:
                total_chunks = calculate_total_chunks(stats.total_reads, records_per_shard)
                context.log.info(
                    f"Total reads: {stats.total_reads:,} | At least {total_chunks:,} partitions"
                )
            context.log.info(f"References: {stats.num_references}")

            start_time = time.time()
            partition_count = 0
            reads_processed = 0

            for partition in stream_partitions(bam_path, records_per_shard):
                partition_count += 1
                reads_processed += len(partition.reads)
                elapsed_time = time.time() - start_time
                rate = reads_processed / elapsed_time if elapsed_time > 0 else 0

                context.log.info(
                    format_progress(partition_count, total_chunks, reads_processed, rate)
                    + f" | Shard: {partition.key.name}"
                )

                yield DynamicOutput(
                    partition,
                    mapping_key=partition.key.mapping_key,
                    metadata={
                        "reference_id": partition.key.reference_id,
                        "ordinal": partition.key.ordinal,
                        "start": partition.key.start,
                        "reads_in_partition": len(partition.reads),
                        "reads_processed": reads_processed,
                    },
                )

            total_time = time.time() - start_time
            context.log.info("=" * 70)
            context.log.info("Partitioning complete!")
            context.log.info(f"Total partitions: {partition_count}")
            context.log.info(f"Total reads: {reads_processed}")
            context.log.info(f"Total time: {total_time:.2f} seconds")

        return partition_reads
