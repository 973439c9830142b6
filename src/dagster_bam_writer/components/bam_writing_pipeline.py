"""
BAM Writing Pipeline Component

A composite component that chains the partitioner, the shard writers and the
index shard writers into one job producing <output> and <output>.bai.

Stage order is carried by data dependencies between ops:

    BROADCAST_HEADER -> WRITE_DATA_SHARDS -> AGGREGATE_DATA_STATS -> CONCAT_DATA
    -> WRITE_INDEX_SHARDS -> AGGREGATE_INDEX_STATS -> CONCAT_INDEX -> DONE

Every fan-out is collected into a single op before the next stage, and the
index fan-out takes the finished data file and the final statistics as
explicit inputs.
"""

import os
import shutil
from typing import Dict, Iterator, List, Tuple

import dagster
from dagster import DynamicOut, DynamicOutput, OpExecutionContext, Out, job, op

from .bam_partitioner import BamPartitioner
from .bam_shard_writer import BamShardWriter, ShardResult
from .bam_records import BGZF_EOF
from .errors import AggregationMismatch, WriteFailure
from .header_codec import HeaderCodec
from .index_shard_writer import IndexShardResult, IndexShardWriter
from .shard_concatenator import concatenate_shards, no_coordinate_trailer
from .statistics import FinalStatistics, ShardStatistics, aggregate, finalize
from .stream_bam import read_header
from .types import FinalDataFile, FinalIndexFile, ShardKey, Stage, WriteRequest

BROADCAST_OP_NAME = "broadcast_header"


def publish(data_file: FinalDataFile, index_file: FinalIndexFile) -> None:
    """
    Move both staged files into place.

    The BAM is never left published without its BAI: if the index cannot be
    moved, the data file goes back to its staged path.
    """
    os.replace(data_file.staged_path, data_file.path)
    try:
        os.replace(index_file.staged_path, index_file.path)
    except OSError as e:
        os.replace(data_file.path, data_file.staged_path)
        raise WriteFailure(f"Failed to publish {index_file.path}: {e}") from e


class BamWritingPipeline(dagster.Model, dagster.Resolvable):
    """
    Complete sharded BAM writing pipeline component.

    Components are injected rather than instantiated, so each stage can be
    configured on its own.
    """

    work_dir: str
    job_name: str = "write_bam_job"
    keep_shards: bool = False
    partitioner: BamPartitioner = BamPartitioner()
    shard_writer: BamShardWriter = BamShardWriter()
    index_writer: IndexShardWriter = IndexShardWriter()

    def build_job(self, context=None):
        codec = HeaderCodec()
        work_dir = self.work_dir
        keep_shards = self.keep_shards

        partition_op = self.partitioner.build_defs(context)
        write_shard_op = self.shard_writer.build_defs(context)
        write_index_shard_op = self.index_writer.build_defs(context)

        @op(
            name=BROADCAST_OP_NAME,
            config_schema={"input_bam": str, "output": str},
            out={"request": Out(WriteRequest), "header": Out(str)},
            tags=Stage.BROADCAST_HEADER.tags,
        )
        def broadcast_header(context: OpExecutionContext) -> Tuple[WriteRequest, str]:
            """Reads the input header once and encodes it for every shard writer."""
            request = WriteRequest(
                input_bam=context.op_config["input_bam"],
                output=context.op_config["output"],
                work_dir=os.path.join(work_dir, context.run_id),
            )
            header = read_header(request.input_bam)
            context.log.info(
                f"Header of {request.input_bam}: {len(header.references)} references, "
                f"anchor {header.anchor}"
            )
            return request, codec.encode(header).decode(codec.encoding)

        @op(tags=Stage.AGGREGATE_DATA_STATS.tags)
        def aggregate_data_statistics(
            context: OpExecutionContext, header: str, results: List[ShardResult]
        ) -> FinalStatistics:
            statistics = finalize(
                aggregate(result.statistics for result in results), codec.decode(header)
            )
            context.log.info(
                f"📊 {statistics.shard_count} data shards, "
                f"{sum(statistics.reference_sizes.values()):,} bytes, "
                f"{statistics.no_coordinate_count} reads without coordinate"
            )
            return statistics

        @op(tags=Stage.CONCAT_DATA.tags)
        def concatenate_data_shards(
            context: OpExecutionContext,
            request: WriteRequest,
            results: List[ShardResult],
            statistics: FinalStatistics,
        ) -> FinalDataFile:
            shards = [(result.key, result.path) for result in results if result.path is not None]
            if len(shards) != statistics.shard_count:
                raise AggregationMismatch(
                    f"{len(shards)} data shards listed, statistics counted {statistics.shard_count}"
                )

            staged_path = request.staged_path(request.output)
            size = concatenate_shards(shards, staged_path, BGZF_EOF)
            context.log.info(f"✅ Concatenated {len(shards)} shards into {staged_path} ({size:,} bytes)")
            return FinalDataFile(path=request.output, staged_path=staged_path, size=size)

        @op(out=DynamicOut(int), tags=Stage.WRITE_INDEX_SHARDS.tags)
        def plan_index_shards(
            context: OpExecutionContext,
            header: str,
            data_file: FinalDataFile,
            statistics: FinalStatistics,
        ) -> Iterator[DynamicOutput[int]]:
            """One index shard per reference, started only once the data file exists."""
            references = codec.decode(header).references
            context.log.info(f"Indexing {data_file.path} across {len(references)} references")
            for reference_id, (name, _) in enumerate(references):
                yield DynamicOutput(
                    reference_id,
                    mapping_key=ShardKey(reference_id).mapping_key,
                    metadata={"reference": name, "bytes": statistics.size_of(reference_id)},
                )

        @op(tags=Stage.AGGREGATE_INDEX_STATS.tags)
        def aggregate_index_statistics(
            context: OpExecutionContext,
            header: str,
            results: List[IndexShardResult],
            data_statistics: FinalStatistics,
        ) -> FinalStatistics:
            statistics = finalize(
                aggregate(
                    ShardStatistics(no_coordinate_count=result.no_coordinate_count, shard_count=1)
                    for result in results
                ),
                codec.decode(header),
            )
            if statistics.no_coordinate_count != data_statistics.no_coordinate_count:
                raise AggregationMismatch(
                    f"Index found {statistics.no_coordinate_count} reads without coordinate, "
                    f"data shards wrote {data_statistics.no_coordinate_count}"
                )
            context.log.info(
                f"📊 {statistics.shard_count} index shards, "
                f"{statistics.no_coordinate_count} reads without coordinate"
            )
            return statistics

        @op(tags=Stage.CONCAT_INDEX.tags)
        def concatenate_index_shards(
            context: OpExecutionContext,
            request: WriteRequest,
            results: List[IndexShardResult],
            statistics: FinalStatistics,
        ) -> FinalIndexFile:
            if len(results) != statistics.reference_count:
                raise AggregationMismatch(
                    f"{len(results)} index shards for {statistics.reference_count} references"
                )

            staged_path = request.staged_path(request.index_output)
            size = concatenate_shards(
                [(result.key, result.path) for result in results],
                staged_path,
                no_coordinate_trailer(statistics.no_coordinate_count),
            )
            context.log.info(f"✅ Concatenated {len(results)} index shards into {staged_path}")
            return FinalIndexFile(
                path=request.index_output,
                staged_path=staged_path,
                size=size,
                no_coordinate_count=statistics.no_coordinate_count,
            )

        @op(tags=Stage.DONE.tags)
        def publish_outputs(
            context: OpExecutionContext,
            request: WriteRequest,
            data_file: FinalDataFile,
            index_file: FinalIndexFile,
        ) -> Dict[str, str]:
            """Moves both staged files into place; only reached if every stage succeeded."""
            publish(data_file, index_file)
            context.log.info(f"🎉 Published {data_file.path} and {index_file.path}")

            if not keep_shards:
                shutil.rmtree(request.work_dir, ignore_errors=True)
            return {"bam": data_file.path, "bai": index_file.path}

        @job(name=self.job_name)
        def write_bam_job():
            """
            Job that writes a BAM and its index from parallel shards.

            The shard writers and index shard writers run as mapped dynamic
            outputs; everything in between is a single collecting op.
            """
            request, header = broadcast_header()

            shard_results = partition_op(request).map(
                lambda partition: write_shard_op(request, header, partition)
            )
            data_statistics = aggregate_data_statistics(header, shard_results.collect())
            data_file = concatenate_data_shards(request, shard_results.collect(), data_statistics)

            index_results = plan_index_shards(header, data_file, data_statistics).map(
                lambda reference_id: write_index_shard_op(
                    request, header, data_file, data_statistics, reference_id
                )
            )
            index_statistics = aggregate_index_statistics(
                header, index_results.collect(), data_statistics
            )
            index_file = concatenate_index_shards(request, index_results.collect(), index_statistics)

            publish_outputs(request, data_file, index_file)

        return write_bam_job

    def build_defs(self, context):
        return dagster.Definitions(jobs=[self.build_job(context)])
