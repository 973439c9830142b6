"""
Shard Concatenator Component

Joins shard files into one file, in shard-key order, followed by a trailer.
"""

import logging
import os
import shutil
import struct
from typing import Iterable, List, Tuple

from .errors import MissingShardError
from .types import ShardKey

logger = logging.getLogger(__name__)

COPY_BUFFER_SIZE = 4 * 1024 * 1024


def no_coordinate_trailer(count: int) -> bytes:
    """BAI footer: count of records without a coordinate, uint64 little-endian."""
    return struct.pack("<Q", count)


def order_shards(shards: Iterable[Tuple[ShardKey, str]]) -> List[Tuple[ShardKey, str]]:
    """
    Sort shards by key.

    Collected shard lists arrive in task completion order, which says nothing
    about where a shard belongs in the output.
    """
    ordered = sorted(shards, key=lambda shard: shard[0].sort_key())
    for (previous, _), (current, _) in zip(ordered, ordered[1:]):
        if previous.sort_key() == current.sort_key():
            raise ValueError(f"Duplicate shard key {current.name}")
    return ordered


def concatenate_shards(
    shards: Iterable[Tuple[ShardKey, str]],
    destination: str,
    trailer: bytes,
) -> int:
    """
    Stream every shard into destination in key order, then append trailer.

    Nothing is written if any shard is missing. The result is renamed into
    place only once complete. Returns the size of the written file.
    """
    ordered = order_shards(shards)
    missing = [path for _, path in ordered if not os.path.isfile(path)]
    if missing:
        raise MissingShardError(f"{len(missing)} shard(s) missing, first: {missing[0]}")

    os.makedirs(os.path.dirname(os.path.abspath(destination)), exist_ok=True)
    temp_path = destination + ".tmp"
    try:
        with open(temp_path, "wb") as out:
            for key, path in ordered:
                with open(path, "rb") as shard:
                    shutil.copyfileobj(shard, out, COPY_BUFFER_SIZE)
                logger.debug("Appended shard %s from %s", key.name, path)
            out.write(trailer)
        os.replace(temp_path, destination)
    except BaseException:
        if os.path.exists(temp_path):
            os.remove(temp_path)
        raise

    size = os.path.getsize(destination)
    logger.info("Concatenated %d shards into %s (%d bytes)", len(ordered), destination, size)
    return size
