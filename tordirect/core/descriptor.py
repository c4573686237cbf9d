"""Content descriptor parsing.

A descriptor is either a magnet URI carrying an ``xt=urn:btih:`` topic or a
bare info hash (40 hex chars or 32 base32 chars). Both reduce to a content id,
the lowercase hex form of the BitTorrent v1 info hash.
"""

from __future__ import annotations

import base64
import binascii
import re
import urllib.parse
from dataclasses import dataclass, field

from tordirect.utils.exceptions import InvalidDescriptorError

_HEX_HASH = re.compile(r"^[0-9a-fA-F]{40}$")
_BASE32_HASH = re.compile(r"^[A-Za-z2-7]{32}$")


@dataclass(frozen=True)
class ContentDescriptor:
    """A validated content descriptor."""

    content_id: str
    uri: str
    display_name: str | None = None
    trackers: list[str] = field(default_factory=list)

    def __str__(self) -> str:
        return self.uri


def _btih_to_hex(btih: str) -> str:
    """Decode a btih value (hex or base32) to a lowercase hex info hash."""
    btih = btih.strip()
    if _HEX_HASH.match(btih):
        return btih.lower()
    if _BASE32_HASH.match(btih):
        try:
            return base64.b32decode(btih.upper()).hex()
        except binascii.Error as e:
            msg = f"Invalid base32 info hash: {btih}"
            raise InvalidDescriptorError(msg) from e
    msg = f"Invalid info hash: {btih!r}"
    raise InvalidDescriptorError(msg, {"info_hash": btih})


def parse_descriptor(raw: str) -> ContentDescriptor:
    """Validate and normalize a content descriptor.

    Args:
        raw: Magnet URI or bare info hash

    Returns:
        The parsed descriptor. Bare hashes are normalized to a minimal
        magnet URI so every descriptor can be persisted the same way.

    Raises:
        InvalidDescriptorError: If the descriptor cannot be parsed

    """
    if not isinstance(raw, str):
        msg = "Descriptor must be a string"
        raise InvalidDescriptorError(msg)

    text = raw.strip()
    if not text:
        msg = "Descriptor is empty"
        raise InvalidDescriptorError(msg)

    if _HEX_HASH.match(text) or _BASE32_HASH.match(text):
        content_id = _btih_to_hex(text)
        return ContentDescriptor(
            content_id=content_id,
            uri=f"magnet:?xt=urn:btih:{content_id}",
        )

    parsed = urllib.parse.urlparse(text)
    if parsed.scheme.lower() != "magnet":
        msg = "Not a magnet URI or info hash"
        raise InvalidDescriptorError(msg, {"descriptor": text[:200]})

    qs = urllib.parse.parse_qs(parsed.query)
    btih_value = None
    for xt in qs.get("xt", []):
        if xt.lower().startswith("urn:btih:"):
            btih_value = xt[len("urn:btih:") :]
            break
    if not btih_value:
        msg = "Magnet URI missing xt=urn:btih"
        raise InvalidDescriptorError(msg, {"descriptor": text[:200]})

    return ContentDescriptor(
        content_id=_btih_to_hex(btih_value),
        uri=text,
        display_name=qs.get("dn", [None])[0],
        trackers=qs.get("tr", []),
    )


def try_parse_descriptor(raw: str) -> ContentDescriptor | None:
    """Parse a descriptor, returning None instead of raising."""
    try:
        return parse_descriptor(raw)
    except InvalidDescriptorError:
        return None
