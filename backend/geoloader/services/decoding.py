"""Strict decoding of legacy attribute bytes into text."""

from __future__ import annotations

import codecs
import dataclasses
from typing import TYPE_CHECKING

from geoloader.core import errors

if TYPE_CHECKING:
    from collections.abc import Mapping

    from geoloader.services import sources
    from geoloader.utils import geometry


@dataclasses.dataclass(frozen=True)
class DecodedRecord:
    index: int
    attributes: Mapping[str, str | None]
    geometry: geometry.Geometry


def decode_text(raw: bytes, encoding: str) -> str:
    """Decode ``raw`` with ``encoding``, refusing any invalid sequence.

    Replacement characters are never substituted; the caller decides what
    a failure means for the record or the run.

    Args:
        raw: Byte string as stored in the source container.
        encoding: Python codec name or alias, e.g. ``"cp932"``.

    Returns:
        The decoded text.

    Raises:
        EncodingError: If ``encoding`` is unknown or ``raw`` holds a byte
            sequence that is invalid for it.
    """
    try:
        codec = codecs.lookup(encoding)
    except LookupError:
        raise errors.EncodingError(f"unknown encoding {encoding!r}") from None
    try:
        text, _ = codec.decode(raw, "strict")
    except UnicodeDecodeError as exc:
        raise errors.EncodingError(
            f"invalid {codec.name} byte sequence "
            f"{exc.object[exc.start:exc.end]!r} at offset {exc.start}"
        ) from exc
    return text


def decode_record(record: sources.RawRecord, encoding: str) -> DecodedRecord:
    """Decode every attribute of ``record``; the geometry is passed through.

    Raises:
        EncodingError: Naming the record index and the offending field.
    """
    attributes: dict[str, str | None] = {}
    for name, raw in record.attributes.items():
        if raw is None:
            attributes[name] = None
            continue
        try:
            attributes[name] = decode_text(raw, encoding)
        except errors.EncodingError as exc:
            raise errors.EncodingError(
                str(exc), field=name, record_index=record.index
            ) from exc
    return DecodedRecord(record.index, attributes, record.geometry)
