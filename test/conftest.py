"""
Global pytest configuration and fixtures.
"""

import os
import random
from typing import List, Optional

import pysam
import pytest

from dagster_bam_writer.components.header_codec import HeaderMetadata
from dagster_bam_writer.components.stream_bam import deserialize_read
from dagster_bam_writer.components.types import Coordinate

REFERENCES = [("A", 100), ("B", 50)]
HEADER_TEXT = "@HD\tVN:1.6\tSO:coordinate\n@SQ\tSN:A\tLN:100\n@SQ\tSN:B\tLN:50\n"


def make_read(
    name: str,
    reference_id: int,
    position: int,
    cigar: Optional[str] = "4M",
    sequence: str = "ACGT",
    flag: int = 0,
    tags: Optional[list] = None,
) -> dict:
    """A serialized read, shaped like stream_bam.serialize_read output."""
    if reference_id == -1:
        position, cigar, flag = -1, None, flag | 4
    return {
        "query_name": name,
        "flag": flag,
        "reference_id": reference_id,
        "reference_start": position,
        "mapping_quality": 60 if reference_id != -1 else 0,
        "cigarstring": cigar,
        "next_reference_id": -1,
        "next_reference_start": -1,
        "template_length": 0,
        "query_sequence": sequence,
        "query_qualities": [30] * len(sequence),
        "tags": tags or [],
    }


def write_input_bam(path: str, references: List[tuple], reads: List[dict]) -> str:
    """
    Write reads (serialized dicts) to a BAM with pysam, in the given order.
    """
    header = pysam.AlignmentHeader.from_dict(
        {
            "HD": {"VN": "1.6", "SO": "coordinate"},
            "SQ": [{"SN": name, "LN": length} for name, length in references],
        }
    )
    with pysam.AlignmentFile(path, "wb", header=header) as out:
        for read in reads:
            out.write(deserialize_read(read, header))
    return path


@pytest.fixture
def header() -> HeaderMetadata:
    """References {A: 100, B: 50}, anchored on the first read at A:1."""
    return HeaderMetadata(text=HEADER_TEXT, anchor=Coordinate("A", 1))


@pytest.fixture
def small_bam(tmp_path) -> str:
    """Three reads on A, two on B and one without a coordinate."""
    reads = [
        make_read("a1", 0, 1, tags=[["NM", 0, "i"], ["RG", "grp1", "Z"]]),
        make_read("a2", 0, 5),
        make_read("a3", 0, 10),
        make_read("b1", 1, 0),
        make_read("b2", 1, 20),
        make_read("u1", -1, -1),
    ]
    return write_input_bam(os.path.join(tmp_path, "small.bam"), REFERENCES, reads)


@pytest.fixture
def large_bam(tmp_path) -> str:
    """
    Enough 100 bp reads over two 200 kbp references that records straddle
    BGZF blocks and span many linear index windows.
    """
    rng = random.Random(7)
    references = [("chr1", 200_000), ("chr2", 200_000)]
    reads = []
    for reference_id in range(2):
        positions = sorted(rng.randrange(0, 199_800) for _ in range(1500))
        for i, position in enumerate(positions):
            sequence = "".join(rng.choice("ACGT") for _ in range(100))
            reads.append(
                make_read(f"r{reference_id}_{i}", reference_id, position, "100M", sequence)
            )
    for i in range(7):
        reads.append(make_read(f"u{i}", -1, -1, sequence="ACGTACGTAC"))
    return write_input_bam(os.path.join(tmp_path, "large.bam"), references, reads)
