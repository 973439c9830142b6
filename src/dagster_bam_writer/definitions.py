import logging
import os

# Configure logging to reduce verbosity - set at the very beginning
logging.basicConfig(level=logging.ERROR, force=True)
logging.getLogger().setLevel(logging.ERROR)
logging.getLogger("dagster").setLevel(logging.ERROR)
logging.getLogger("dagster._core").setLevel(logging.ERROR)
logging.getLogger("dagster._core.executor").setLevel(logging.ERROR)
logging.getLogger("dagster._core.execution").setLevel(logging.ERROR)

from dagster import definitions, Definitions
from dagster.components.core.component_tree import ComponentTree

from .components.bam_file_sensor import BamFileSensor
from .components.bam_partitioner import BamPartitioner
from .components.bam_shard_writer import BamShardWriter
from .components.bam_writing_pipeline import BamWritingPipeline

DATA_ROOT = os.environ.get("BAM_WRITER_DATA_ROOT", "data")


@definitions
def defs():
    context = ComponentTree.for_test().load_context

    pipeline = BamWritingPipeline(
        work_dir=os.path.join(DATA_ROOT, "work"),
        partitioner=BamPartitioner(records_per_shard=100_000),
        shard_writer=BamShardWriter(compression_level=6),
    )

    bam_sensor = BamFileSensor(
        name="incoming",
        watch_directory=os.path.join(DATA_ROOT, "incoming"),
        output_directory=os.path.join(DATA_ROOT, "merged"),
        job_name=pipeline.job_name,
    )

    write_bam_job = pipeline.build_job(context)
    sensor_def = bam_sensor.build_defs(context)

    return Definitions(sensors=[sensor_def], jobs=[write_bam_job])
