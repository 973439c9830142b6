"""
Shared types for sharded BAM writing components.
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Tuple

UNPLACED_REFERENCE_ID = -1


class Stage(Enum):
    """Pipeline stages. Each one starts only after the previous one completed."""

    BROADCAST_HEADER = "BROADCAST_HEADER"
    WRITE_DATA_SHARDS = "WRITE_DATA_SHARDS"
    AGGREGATE_DATA_STATS = "AGGREGATE_DATA_STATS"
    CONCAT_DATA = "CONCAT_DATA"
    WRITE_INDEX_SHARDS = "WRITE_INDEX_SHARDS"
    AGGREGATE_INDEX_STATS = "AGGREGATE_INDEX_STATS"
    CONCAT_INDEX = "CONCAT_INDEX"
    DONE = "DONE"

    @property
    def tags(self) -> dict:
        return {"stage": self.value}


@dataclass(frozen=True)
class Coordinate:
    """A reference name and 0-based position."""

    reference_name: str
    position: int

    def __str__(self) -> str:
        return f"{self.reference_name}:{self.position}"

    @classmethod
    def parse(cls, text: str) -> "Coordinate":
        # Reference names may themselves contain colons (e.g. HLA contigs)
        name, sep, position = text.rpartition(":")
        if not sep or not name:
            raise ValueError(f"Coordinate must look like <reference>:<position>, got {text!r}")
        return cls(reference_name=name, position=int(position))


@dataclass(frozen=True)
class ShardKey:
    """Position of a shard in the final output order."""

    reference_id: int
    ordinal: int = 0
    start: int = -1

    @property
    def is_unplaced(self) -> bool:
        return self.reference_id == UNPLACED_REFERENCE_ID

    def sort_key(self) -> Tuple[bool, int, int]:
        # Records without a coordinate always go after every placed reference
        return (self.is_unplaced, self.reference_id, self.ordinal)

    @property
    def name(self) -> str:
        """File-name form of the key; lexical order matches sort_key()."""
        if self.is_unplaced:
            return f"unplaced-o{self.ordinal:06d}"
        return f"r{self.reference_id:06d}-o{self.ordinal:06d}"

    @property
    def mapping_key(self) -> str:
        return self.name.replace("-", "_")


@dataclass
class RecordPartition:
    """An ordered run of serialized reads destined for one shard."""

    key: ShardKey
    reads: List[dict] = field(default_factory=list)


@dataclass(frozen=True)
class WriteRequest:
    """Where one run reads its input and places its shards and outputs."""

    input_bam: str
    output: str
    work_dir: str

    @property
    def index_output(self) -> str:
        return self.output + ".bai"

    def shard_directory(self, kind: str) -> str:
        return os.path.join(self.work_dir, kind)

    def staged_path(self, final_path: str) -> str:
        return final_path + ".staging"


@dataclass(frozen=True)
class FinalDataFile:
    """Identity of the concatenated BAM before publication."""

    path: str
    staged_path: str
    size: int


@dataclass(frozen=True)
class FinalIndexFile:
    """Identity of the concatenated BAI before publication."""

    path: str
    staged_path: str
    size: int
    no_coordinate_count: int
