#!/usr/bin/env python3

import sys
import time

from dagster_bam_writer.components.bam_writing_pipeline import (
    BROADCAST_OP_NAME,
    BamWritingPipeline,
)


def main(argv=None):
    """Write a BAM and its index from shards, in process."""
    argv = sys.argv[1:] if argv is None else argv
    if len(argv) not in (2, 3):
        print("Usage: run_write_bam.py <input.bam> <output.bam> [work_dir]")
        return 2

    input_bam, output = argv[0], argv[1]
    work_dir = argv[2] if len(argv) == 3 else output + ".work"

    pipeline = BamWritingPipeline(work_dir=work_dir)
    run_config = {
        "ops": {BROADCAST_OP_NAME: {"config": {"input_bam": input_bam, "output": output}}}
    }

    try:
        start_time = time.time()
        print(f"🚀 Writing {output} from {input_bam}")

        result = pipeline.build_job().execute_in_process(run_config=run_config)
        paths = result.output_for_node("publish_outputs")

        elapsed = time.time() - start_time
        print(f"✅ Wrote {paths['bam']} and {paths['bai']} in {elapsed:.2f} seconds!")

    except Exception as e:
        print(f"❌ Error: {e}")
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
