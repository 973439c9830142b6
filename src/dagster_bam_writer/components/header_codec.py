"""
Header codec for the broadcast header.

Every shard writer receives the same header as an encoded string: the anchor
coordinate on the first line, followed by the SAM header text. Splitting on the
first newline recovers both parts.
"""

from dataclasses import dataclass
from functools import cached_property
from typing import Dict, Tuple, Union

import pysam

from .errors import MalformedHeaderError
from .types import Coordinate


@dataclass(frozen=True)
class HeaderMetadata:
    """SAM header text plus the coordinate of the first placed record."""

    text: str
    anchor: Coordinate

    @cached_property
    def references(self) -> Tuple[Tuple[str, int], ...]:
        """(name, length) pairs in header order."""
        try:
            header = pysam.AlignmentHeader.from_text(self.text)
        except ValueError as e:
            raise MalformedHeaderError(f"Unparseable SAM header text: {e}") from e
        return tuple(zip(header.references, header.lengths))

    @cached_property
    def reference_ids(self) -> Dict[str, int]:
        return {name: index for index, (name, _) in enumerate(self.references)}

    @property
    def anchor_reference_id(self) -> int:
        return self.reference_ids[self.anchor.reference_name]

    def validate(self) -> None:
        if self.anchor.reference_name not in self.reference_ids:
            raise MalformedHeaderError(
                f"Anchor {self.anchor} names a reference missing from the header"
            )
        if self.anchor.position < 0:
            raise MalformedHeaderError(f"Anchor {self.anchor} has a negative position")


@dataclass(frozen=True)
class HeaderCodec:
    """
    Encodes HeaderMetadata to bytes and back.

    Constructed explicitly and passed to whichever op needs it; there is no
    shared codec instance.
    """

    validate_anchor: bool = True
    encoding: str = "utf-8"

    def encode(self, header: HeaderMetadata) -> bytes:
        return f"{header.anchor}\n{header.text}".encode(self.encoding)

    def decode(self, data: Union[bytes, str]) -> HeaderMetadata:
        text = data.decode(self.encoding) if isinstance(data, bytes) else data

        anchor_text, newline, header_text = text.partition("\n")
        if not newline:
            raise MalformedHeaderError("Encoded header has no anchor line")

        try:
            anchor = Coordinate.parse(anchor_text)
        except ValueError as e:
            raise MalformedHeaderError(f"Bad anchor coordinate {anchor_text!r}") from e

        header = HeaderMetadata(text=header_text, anchor=anchor)
        if self.validate_anchor:
            header.validate()
        return header
