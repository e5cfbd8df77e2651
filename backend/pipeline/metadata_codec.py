"""
Metadata Codec
==============
Carries an arbitrarily long string through a metadata channel with a hard
per-field size cap (Stripe: 500 characters per value, 50 keys per object).

encode() produces a lossy, human-readable truncated copy plus a lossless
sequence of base64 chunks. decode() is all-or-nothing: any missing chunk
fails the whole reconstruction and the caller falls back to the truncated
copy.
"""

import base64
import binascii
from dataclasses import dataclass
from typing import Mapping, Optional, Sequence

import structlog

from pipeline.errors import DecodeError

logger = structlog.get_logger().bind(component="metadata_codec")

ELLIPSIS = "..."

# Stripe: at most 50 keys per metadata object
MAX_METADATA_KEYS = 50


@dataclass(frozen=True)
class EncodedValue:
    truncated: str
    chunks: tuple[str, ...]

    @property
    def chunk_count(self) -> int:
        return len(self.chunks)


def truncate(value: str, max_field_length: int) -> str:
    if len(value) <= max_field_length:
        return value
    return value[: max_field_length - len(ELLIPSIS)] + ELLIPSIS


def encode(value: str, max_field_length: int) -> EncodedValue:
    """Split `value` into a truncated label and base64 chunks of at most `max_field_length`."""
    if max_field_length <= len(ELLIPSIS):
        raise ValueError(f"max_field_length must exceed {len(ELLIPSIS)}, got {max_field_length}")

    encoded = base64.b64encode(value.encode("utf-8")).decode("ascii")
    chunks = tuple(
        encoded[i:i + max_field_length]
        for i in range(0, len(encoded), max_field_length)
    )
    return EncodedValue(truncated=truncate(value, max_field_length), chunks=chunks)


def decode(chunks: Sequence[Optional[str]], expected_count: int) -> str:
    """Reassemble chunks in index order and base64-decode them."""
    if expected_count < 0:
        raise DecodeError(f"Invalid chunk count: {expected_count}")

    parts = []
    for i in range(expected_count):
        chunk = chunks[i] if i < len(chunks) else None
        if not chunk:
            raise DecodeError(f"Missing chunk {i}", context={"expected": expected_count})
        parts.append(chunk)

    try:
        raw = base64.b64decode("".join(parts), validate=True)
        return raw.decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as e:
        raise DecodeError(f"Chunk payload is not valid base64 text: {e}") from e


# =============================================================================
# STRIPE METADATA ENVELOPE
# =============================================================================

class MetadataEnvelope:
    """
    Order context attached to the checkout session metadata.

    Keys: leads, apolloUrl (truncated), email, cleanOutput, timestamp, orderId,
    fullUrlLength, urlChunkCount, urlChunk0..urlChunkN-1.
    """

    LEADS = "leads"
    URL = "apolloUrl"
    EMAIL = "email"
    CLEAN_OUTPUT = "cleanOutput"
    TIMESTAMP = "timestamp"
    ORDER_ID = "orderId"
    FULL_URL_LENGTH = "fullUrlLength"
    CHUNK_COUNT = "urlChunkCount"
    CHUNK_PREFIX = "urlChunk"

    def __init__(self, metadata: Optional[Mapping[str, str]] = None, max_keys: int = MAX_METADATA_KEYS):
        self.metadata = dict(metadata or {})
        self.max_keys = max_keys

    @classmethod
    def build(
        cls,
        *,
        url: str,
        email: str,
        leads: int,
        clean_output: bool,
        timestamp: str,
        order_id: str,
        max_field_length: int,
    ) -> "MetadataEnvelope":
        encoded = encode(url, max_field_length)
        metadata = {
            cls.LEADS: str(leads),
            cls.URL: encoded.truncated,
            cls.EMAIL: email,
            cls.CLEAN_OUTPUT: "true" if clean_output else "false",
            cls.TIMESTAMP: timestamp,
            cls.ORDER_ID: order_id,
            cls.FULL_URL_LENGTH: str(len(url)),
            cls.CHUNK_COUNT: str(encoded.chunk_count),
        }
        for index, chunk in enumerate(encoded.chunks):
            metadata[f"{cls.CHUNK_PREFIX}{index}"] = chunk
        return cls(metadata)

    def __len__(self) -> int:
        return len(self.metadata)

    def get(self, key: str) -> Optional[str]:
        return self.metadata.get(key)

    def to_dict(self) -> dict[str, str]:
        return dict(self.metadata)

    def decode_url(self) -> str:
        """Lossless reconstruction. Raises DecodeError if anything is missing."""
        raw_count = self.metadata.get(self.CHUNK_COUNT)
        if raw_count is None:
            raise DecodeError("No chunk count in metadata")
        try:
            count = int(raw_count)
        except ValueError as e:
            raise DecodeError(f"Invalid chunk count: {raw_count!r}") from e
        if not 0 <= count <= self.max_keys:
            raise DecodeError(
                f"Chunk count {count} outside 0..{self.max_keys}",
                context={"max_keys": self.max_keys},
            )

        chunks = [self.metadata.get(f"{self.CHUNK_PREFIX}{i}") for i in range(count)]
        url = decode(chunks, count)

        expected_length = self.metadata.get(self.FULL_URL_LENGTH)
        if expected_length and expected_length.isdigit() and int(expected_length) != len(url):
            raise DecodeError(
                f"Decoded length {len(url)} does not match fullUrlLength {expected_length}"
            )
        return url

    def recover_url(self) -> tuple[Optional[str], bool]:
        """
        Best available URL and whether it is the full, untruncated value.
        Falls back to the truncated label on any decode failure.
        """
        try:
            return self.decode_url(), True
        except DecodeError as e:
            logger.warning("url_decode_fallback",
                           reason=str(e),
                           chunk_count=self.metadata.get(self.CHUNK_COUNT))
            return self.metadata.get(self.URL), False
