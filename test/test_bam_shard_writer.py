"""
Tests for writing single BAM shards.
"""

import gzip
import os

import pysam
import pytest

from dagster_bam_writer.components.bam_shard_writer import carries_header, write_shard
from dagster_bam_writer.components.bam_records import BGZF_EOF
from dagster_bam_writer.components.errors import WriteFailure
from dagster_bam_writer.components.types import RecordPartition, ShardKey

from conftest import make_read


@pytest.fixture
def partition():
    return RecordPartition(
        key=ShardKey(0, 0, 1),
        reads=[make_read("a1", 0, 1), make_read("a2", 0, 5), make_read("a3", 0, 10)],
    )


def test_empty_partition_writes_nothing(tmp_path, header):
    result = write_shard(RecordPartition(key=ShardKey(1, 3, 0)), header, str(tmp_path))
    assert result.path is None
    assert result.statistics.reference_sizes == {}
    assert result.statistics.no_coordinate_count == 0
    assert result.statistics.shard_count == 0
    assert os.listdir(tmp_path) == []


def test_shard_statistics(tmp_path, header, partition):
    result = write_shard(partition, header, str(tmp_path))
    assert result.path == os.path.join(tmp_path, "r000000-o000000.bam")
    assert result.statistics.reference_sizes == {0: os.path.getsize(result.path)}
    assert result.statistics.no_coordinate_count == 0
    assert result.statistics.shard_count == 1


def test_rewrite_is_byte_identical(tmp_path, header, partition):
    """A retried task must reproduce the exact same shard."""
    first = write_shard(partition, header, str(tmp_path / "first"))
    second = write_shard(partition, header, str(tmp_path / "second"))
    with open(first.path, "rb") as a, open(second.path, "rb") as b:
        assert a.read() == b.read()

    again = write_shard(partition, header, str(tmp_path / "first"))
    assert again == first
    assert sorted(os.listdir(tmp_path / "first")) == ["r000000-o000000.bam"]


def test_only_anchor_shard_carries_header(header):
    assert carries_header(ShardKey(0, 0), header)
    assert not carries_header(ShardKey(0, 1), header)
    assert not carries_header(ShardKey(1, 0), header)
    assert not carries_header(ShardKey(-1, 0), header)


def test_header_shard_is_a_readable_bam(tmp_path, header, partition):
    result = write_shard(partition, header, str(tmp_path))
    bam_path = str(tmp_path / "single.bam")
    with open(bam_path, "wb") as out, open(result.path, "rb") as shard:
        out.write(shard.read() + BGZF_EOF)

    with pysam.AlignmentFile(bam_path, "rb") as samfile:
        assert samfile.references == ("A", "B")
        reads = list(samfile.fetch(until_eof=True))
    assert [read.query_name for read in reads] == ["a1", "a2", "a3"]
    assert [read.reference_start for read in reads] == [1, 5, 10]
    assert reads[0].cigarstring == "4M"
    assert reads[0].query_sequence == "ACGT"
    assert list(reads[0].query_qualities) == [30, 30, 30, 30]


def test_unplaced_reads_counted(tmp_path, header):
    partition = RecordPartition(
        key=ShardKey(1, 0, 0),
        reads=[make_read("b1", 1, 0), make_read("u1", -1, -1)],
    )
    result = write_shard(partition, header, str(tmp_path))
    assert result.statistics.no_coordinate_count == 1
    assert list(result.statistics.reference_sizes) == [1]


def test_unplaced_partition_credits_no_reference(tmp_path, header):
    partition = RecordPartition(key=ShardKey(-1, 0), reads=[make_read("u1", -1, -1)])
    result = write_shard(partition, header, str(tmp_path))
    assert result.path.endswith("unplaced-o000000.bam")
    assert result.statistics.reference_sizes == {}
    assert result.statistics.no_coordinate_count == 1


def test_read_from_other_reference_rejected(tmp_path, header):
    partition = RecordPartition(key=ShardKey(0, 0), reads=[make_read("b1", 1, 0)])
    with pytest.raises(ValueError, match="does not belong"):
        write_shard(partition, header, str(tmp_path))


def test_write_failure(tmp_path, header, partition):
    blocker = tmp_path / "not-a-directory"
    blocker.write_text("")
    with pytest.raises(WriteFailure, match="r000000-o000000"):
        write_shard(partition, header, str(blocker))


def _decompressed(path):
    with open(path, "rb") as handle:
        return gzip.decompress(handle.read())


def test_header_blocks_kept_only_by_anchor_shard(tmp_path, header, partition):
    anchor = write_shard(partition, header, str(tmp_path))
    later = write_shard(
        RecordPartition(key=ShardKey(0, 1, 20), reads=[make_read("a4", 0, 20)]),
        header,
        str(tmp_path),
    )
    assert _decompressed(anchor.path).startswith(b"BAM\x01")
    assert not _decompressed(later.path).startswith(b"BAM\x01")
    assert b"@SQ" not in _decompressed(later.path)

    for result in (anchor, later):
        with open(result.path, "rb") as handle:
            assert not handle.read().endswith(BGZF_EOF)


def test_aux_tags_survive(tmp_path, header):
    tags = [["NM", 2, "i"], ["RG", "grp1", "Z"], ["XF", 1.5, "f"], ["XC", "x", "A"]]
    partition = RecordPartition(key=ShardKey(0, 0, 1), reads=[make_read("a1", 0, 1, tags=tags)])
    result = write_shard(partition, header, str(tmp_path))

    bam_path = str(tmp_path / "tags.bam")
    with open(bam_path, "wb") as out, open(result.path, "rb") as shard:
        out.write(shard.read() + BGZF_EOF)
    with pysam.AlignmentFile(bam_path, "rb") as samfile:
        read = next(samfile)
    assert read.get_tag("NM") == 2
    assert read.get_tag("RG") == "grp1"
    assert read.get_tag("XF") == 1.5
    assert read.get_tag("XC") == "x"


def test_compression_level(tmp_path, header):
    reads = [make_read(f"a{i}", 0, 0, "100M", "ACGT" * 25) for i in range(500)]
    partition = RecordPartition(key=ShardKey(0, 1, 0), reads=reads)
    stored = write_shard(partition, header, str(tmp_path / "stored"), compression_level=0)
    deflated = write_shard(partition, header, str(tmp_path / "deflated"), compression_level=9)
    assert os.path.getsize(stored.path) > 2 * os.path.getsize(deflated.path)
    assert _decompressed(stored.path) == _decompressed(deflated.path)
