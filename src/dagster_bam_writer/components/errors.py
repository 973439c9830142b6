"""
Errors raised while writing sharded BAM and BAI files.

Every error here is fatal for the run: ops log it and re-raise so that Dagster
skips all downstream stages and nothing is published.
"""


class ShardedBamError(Exception):
    """Base class for all sharded BAM writing failures."""


class MalformedHeaderError(ShardedBamError):
    """The broadcast header could not be decoded or is inconsistent."""


class WriteFailure(ShardedBamError):
    """An I/O failure while producing a shard artifact."""


class MissingShardError(ShardedBamError):
    """A shard referenced for concatenation does not exist on disk."""


class AggregationMismatch(ShardedBamError):
    """Aggregated statistics disagree with the header or with each other."""


class StageBarrierError(ShardedBamError):
    """A stage was invoked before the outputs it depends on were final."""
