"""
Tests for reading the input BAM into a header and partitions.
"""

import os

import pytest

from dagster_bam_writer.components.errors import MalformedHeaderError
from dagster_bam_writer.components.stream_bam import (
    BamStats,
    calculate_total_chunks,
    read_header,
    stream_partitions,
)
from dagster_bam_writer.components.types import Coordinate

from conftest import REFERENCES, make_read, write_input_bam


def test_read_header_anchors_on_first_placed_read(small_bam):
    header = read_header(small_bam)
    assert header.references == (("A", 100), ("B", 50))
    assert header.anchor == Coordinate("A", 1)


def test_read_header_without_placed_reads(tmp_path):
    bam = write_input_bam(str(tmp_path / "unplaced.bam"), REFERENCES, [make_read("u", -1, -1)])
    with pytest.raises(MalformedHeaderError, match="no read with a coordinate"):
        read_header(bam)


def test_partitions_split_by_reference_and_size(small_bam):
    partitions = list(stream_partitions(small_bam, records_per_shard=2))
    assert [p.key.name for p in partitions] == [
        "r000000-o000000",
        "r000000-o000001",
        "r000001-o000000",
        "unplaced-o000000",
    ]
    assert [len(p.reads) for p in partitions] == [2, 1, 2, 1]
    assert [p.key.start for p in partitions] == [1, 10, 0, -1]


def test_serialized_reads_keep_tags(small_bam):
    first = next(stream_partitions(small_bam)).reads[0]
    assert first["query_name"] == "a1"
    assert first["cigarstring"] == "4M"
    assert first["query_qualities"] == [30, 30, 30, 30]
    assert {tag[0]: tag[1] for tag in first["tags"]} == {"NM": 0, "RG": "grp1"}


def test_unsorted_input_rejected(tmp_path):
    reads = [make_read("a2", 0, 50), make_read("a1", 0, 10)]
    bam = write_input_bam(str(tmp_path / "unsorted.bam"), REFERENCES, reads)
    with pytest.raises(ValueError, match="not coordinate-sorted"):
        list(stream_partitions(bam))


def test_records_per_shard_must_be_positive(small_bam):
    with pytest.raises(ValueError, match="at least 1"):
        list(stream_partitions(small_bam, records_per_shard=0))


def test_bam_stats_without_index(small_bam):
    stats = BamStats.from_path(small_bam)
    assert stats.total_reads is None
    assert stats.num_references == 2
    assert os.path.samefile(stats.path, small_bam)


def test_calculate_total_chunks():
    assert calculate_total_chunks(0, 10) == 0
    assert calculate_total_chunks(10, 10) == 1
    assert calculate_total_chunks(11, 10) == 2
