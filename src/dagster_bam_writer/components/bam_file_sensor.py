"""
BAM File Sensor Component

A reusable sensor component that launches the writing job for every BAM file
that appears in a watched directory.
"""

import os
from typing import Iterator

import dagster
from dagster import RunRequest, SensorEvaluationContext, sensor

from .bam_writing_pipeline import BROADCAST_OP_NAME

MERGED_SUFFIX = ".merged.bam"


class BamFileSensor(dagster.Model, dagster.Resolvable):
    """
    Sensor component for detecting new input BAM files.

    The run key includes the file's modification time, so a replaced file is
    picked up again while an unchanged one is never re-run.
    """

    name: str
    watch_directory: str
    output_directory: str
    job_name: str = "write_bam_job"
    minimum_interval_seconds: int = 60

    def output_path(self, bam_path: str) -> str:
        stem = os.path.basename(bam_path)[: -len(".bam")]
        return os.path.join(self.output_directory, stem + MERGED_SUFFIX)

    def build_defs(self, context):
        @sensor(
            name=f"{self.name}_bam_file_sensor",
            job_name=self.job_name,
            minimum_interval_seconds=self.minimum_interval_seconds,
        )
        def bam_file_sensor(context: SensorEvaluationContext) -> Iterator[RunRequest]:
            """
            Sensor that yields one run request per input BAM in the watched directory.

            Our own outputs are skipped in case the output directory is the
            watched one.
            """
            if not os.path.isdir(self.watch_directory):
                context.log.debug(f"Watch directory {self.watch_directory} does not exist")
                return

            for entry in sorted(os.scandir(self.watch_directory), key=lambda e: e.name):
                if not entry.is_file() or not entry.name.endswith(".bam"):
                    continue
                if entry.name.endswith(MERGED_SUFFIX):
                    continue

                mtime = int(entry.stat().st_mtime)
                context.log.info(f"BAM file detected: {entry.path}")

                yield RunRequest(
                    run_key=f"{entry.name}:{mtime}",
                    run_config={
                        "ops": {
                            BROADCAST_OP_NAME: {
                                "config": {
                                    "input_bam": entry.path,
                                    "output": self.output_path(entry.path),
                                }
                            }
                        }
                    },
                    tags={"input_bam": entry.path, "pipeline": self.name},
                )

        return bam_file_sensor
