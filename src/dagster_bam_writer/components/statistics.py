"""
Statistic aggregation for shard writers.

Shard statistics form a commutative monoid under +, so Dagster (or anything
else) may sum contributions in any order and grouping and reach the same
totals. Only finalize() turns a sum into FinalStatistics, the type later stages
require as proof that every contribution was counted.
"""

import logging
from dataclasses import dataclass, field
from functools import reduce
from typing import Dict, Iterable

from .errors import AggregationMismatch
from .header_codec import HeaderMetadata

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ShardStatistics:
    """Per-reference compressed sizes plus the no-coordinate record count."""

    reference_sizes: Dict[int, int] = field(default_factory=dict)
    no_coordinate_count: int = 0
    shard_count: int = 0

    @classmethod
    def zero(cls) -> "ShardStatistics":
        return cls()

    def __add__(self, other: "ShardStatistics") -> "ShardStatistics":
        if not isinstance(other, ShardStatistics):
            return NotImplemented
        sizes = dict(self.reference_sizes)
        for reference_id, size in other.reference_sizes.items():
            sizes[reference_id] = sizes.get(reference_id, 0) + size
        return ShardStatistics(
            reference_sizes=sizes,
            no_coordinate_count=self.no_coordinate_count + other.no_coordinate_count,
            shard_count=self.shard_count + other.shard_count,
        )


@dataclass(frozen=True)
class FinalStatistics(ShardStatistics):
    """Totals validated against the header once all shards reported."""

    reference_count: int = 0

    def size_of(self, reference_id: int) -> int:
        return self.reference_sizes.get(reference_id, 0)

    def offset_of(self, reference_id: int) -> int:
        """Compressed offset where a reference's shards start in the final BAM."""
        return sum(self.size_of(i) for i in range(reference_id))


def aggregate(contributions: Iterable[ShardStatistics]) -> ShardStatistics:
    return reduce(lambda a, b: a + b, contributions, ShardStatistics.zero())


def finalize(statistics: ShardStatistics, header: HeaderMetadata) -> FinalStatistics:
    """Check the summed statistics against the header and seal them."""
    reference_count = len(header.references)
    for reference_id, size in statistics.reference_sizes.items():
        if not 0 <= reference_id < reference_count:
            raise AggregationMismatch(
                f"Size statistics mention reference id {reference_id}, "
                f"but the header only has {reference_count} references"
            )
        if size < 0:
            raise AggregationMismatch(f"Negative size {size} for reference id {reference_id}")

    logger.debug(
        "Finalized statistics over %d shards: %d references, %d records without coordinate",
        statistics.shard_count,
        len(statistics.reference_sizes),
        statistics.no_coordinate_count,
    )
    return FinalStatistics(
        reference_sizes=dict(statistics.reference_sizes),
        no_coordinate_count=statistics.no_coordinate_count,
        shard_count=statistics.shard_count,
        reference_count=reference_count,
    )
