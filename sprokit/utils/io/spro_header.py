"""SPro header decoding.

This module locates the optional textual header of an SPro feature stream and
decodes the fixed binary header that follows it.

SPro Format Specification (SPro 4/5 feature streams):
- Optional variable-length header:
  - "<header>" (8 bytes), free text, "</header>" (9 bytes), "\\n"
  - Text lines hold ";"-separated "key = value" clauses, "#" starts a comment
- Fixed header, little-endian:
  - int16 - feature vector dimension
  - uint32 - content flags bitmask
  - float32 - frame rate (vectors per second)
- Data: float32 little-endian values, row-major, one vector per frame

Format Notes:
- The 2010 SPro encoder writes the content flags as a 64-bit field although
  the documentation says 32 bits. ``SProOptions.contentflags_64bit`` skips the
  4 extra bytes for files written by that encoder.
- The historical reader tests the "A" (delta-delta) flag on bit 0x01, the same
  bit as "E". ``DEFAULT_FLAG_TABLE`` keeps that behaviour; pass
  ``DOCUMENTED_FLAG_TABLE`` to decode bit 0x10 as "A" instead.
- The historical reader scans for "</header>" with a 9-byte window and only
  keeps the last byte of each window, so the first 8 characters of the header
  text are never kept. ``locate_text_header`` drops them the same way;
  ``SProOptions.lossless_text_header`` keeps the whole text.

Reference: http://www.irisa.fr/metiss/guig/spro/spro-4.0.1/spro_3.html#SEC17
"""

import os
import struct
from dataclasses import dataclass, field
from typing import Any, BinaryIO, Mapping

import numpy as np

from ..logging import get_logger
from .errors import CorruptedHeaderError


logger = get_logger(__name__)

HEADER_OPEN_TAG = b"<header>"
HEADER_CLOSE_TAG = b"</header>"

# Leading header characters the historical 9-byte window scan never keeps
TEXT_HEADER_SKIP = len(HEADER_CLOSE_TAG) - 1

# Upper bound on the textual header scan (bytes after the opening tag)
DEFAULT_MAX_HEADER_BYTES = 1024 * 1024

_FEATURE_SIZE = struct.Struct("<h")
_CONTENT_FLAGS = struct.Struct("<I")
_FRAME_RATE = struct.Struct("<f")
CONTENT_FLAGS_PADDING = 4

# Fixed header size in bytes (32-bit content flags)
FIXED_HEADER_SIZE = _FEATURE_SIZE.size + _CONTENT_FLAGS.size + _FRAME_RATE.size

# Bit-to-letter mapping in test order:
#   E  log-energy present
#   Z  mean removed
#   N  static log-energy suppressed
#   D  delta coefficients present
#   A  delta-delta coefficients present
#   R  variance normalized
# Known upstream defect: "A" is tested on 0x01, the "E" bit.
DEFAULT_FLAG_TABLE: tuple[tuple[int, str], ...] = (
    (0x01, "E"),
    (0x02, "Z"),
    (0x04, "N"),
    (0x08, "D"),
    (0x01, "A"),
    (0x20, "R"),
)

DOCUMENTED_FLAG_TABLE: tuple[tuple[int, str], ...] = (
    (0x01, "E"),
    (0x02, "Z"),
    (0x04, "N"),
    (0x08, "D"),
    (0x10, "A"),
    (0x20, "R"),
)

_TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class SProOptions:
    """Decoding options for SPro feature files.

    Attributes:
        contentflags_64bit: Skip 4 padding bytes after the content flags, for
            files written by the 2010 SPro encoder.
        flag_table: Ordered (bitmask, letter) pairs used to describe the
            content flags.
        max_header_bytes: Maximum number of bytes scanned for "</header>".
        lossless_text_header: Keep the first TEXT_HEADER_SKIP characters of
            the textual header, which the historical reader drops.
        dtype: Float type the float32 feature data is widened to.
    """

    contentflags_64bit: bool = False
    flag_table: tuple[tuple[int, str], ...] = DEFAULT_FLAG_TABLE
    max_header_bytes: int = DEFAULT_MAX_HEADER_BYTES
    lossless_text_header: bool = False
    dtype: Any = field(default=np.float64)

    def __post_init__(self) -> None:
        if self.max_header_bytes <= 0:
            raise ValueError(f"max_header_bytes must be positive, got {self.max_header_bytes}")

    @property
    def fixed_header_size(self) -> int:
        """Size in bytes of the fixed header under these options."""
        if self.contentflags_64bit:
            return FIXED_HEADER_SIZE + CONTENT_FLAGS_PADDING
        return FIXED_HEADER_SIZE

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "SProOptions":
        """Build options from SPRO_CONTENTFLAGS_64BITS, SPRO_MAX_HEADER_BYTES
        and SPRO_LOSSLESS_TEXT_HEADER.
        """
        environ = os.environ if environ is None else environ
        flag = environ.get("SPRO_CONTENTFLAGS_64BITS", "").strip().lower() in _TRUE_VALUES
        max_bytes = environ.get("SPRO_MAX_HEADER_BYTES", "").strip()
        lossless = environ.get("SPRO_LOSSLESS_TEXT_HEADER", "").strip().lower() in _TRUE_VALUES
        return cls(
            contentflags_64bit=flag,
            max_header_bytes=int(max_bytes) if max_bytes else DEFAULT_MAX_HEADER_BYTES,
            lossless_text_header=lossless,
        )


@dataclass(frozen=True)
class SProHeader:
    """Fixed SPro header.

    Attributes:
        feature_size: Dimension of each feature vector.
        content_flags: Flag letters, e.g. "EDA".
        frame_rate: Number of feature vectors per second.
        raw_flags: Undecoded content flags bitmask.
    """

    feature_size: int
    content_flags: str
    frame_rate: float
    raw_flags: int = 0


def decode_content_flags(
    raw_flags: int,
    flag_table: tuple[tuple[int, str], ...] = DEFAULT_FLAG_TABLE,
) -> str:
    """Describe a content flags bitmask as a string of flag letters.

    Every table entry is tested independently, so one bit may yield several
    letters. Bits absent from the table are ignored.
    """
    return "".join(letter for mask, letter in flag_table if raw_flags & mask)


def locate_text_header(
    stream: BinaryIO,
    max_header_bytes: int = DEFAULT_MAX_HEADER_BYTES,
    lossless: bool = False,
) -> tuple[str | None, list[str]]:
    """Extract the optional textual header from the start of a stream.

    On return the stream is positioned on the fixed header.

    Args:
        stream: Seekable binary stream positioned at the start of the file.
        max_header_bytes: Maximum number of bytes scanned for "</header>".
        lossless: If True, return all the text between the tags. Otherwise
            the first TEXT_HEADER_SKIP characters are dropped, as the
            historical reader does.

    Returns:
        Tuple of (header text or None when no "<header>" tag is present,
        list of non-fatal warnings).

    Raises:
        CorruptedHeaderError: If "</header>" is not found within the scan bound.
    """
    warnings: list[str] = []
    start = stream.tell()

    if stream.read(len(HEADER_OPEN_TAG)) != HEADER_OPEN_TAG:
        stream.seek(start)
        message = "Missing <header> tag. Can cause problems when working with scopy"
        logger.warning(message)
        warnings.append(message)
        return None, warnings

    prefix = stream.read(max_header_bytes)
    end = prefix.find(HEADER_CLOSE_TAG)
    if end < 0:
        raise CorruptedHeaderError(
            f"Corrupted SPro header: no </header> tag within {max_header_bytes} bytes"
        )

    text = prefix[:end].decode("latin-1")
    if not lossless:
        text = text[TEXT_HEADER_SKIP:]
    data_start = start + len(HEADER_OPEN_TAG) + end + len(HEADER_CLOSE_TAG)
    stream.seek(data_start)

    if stream.read(1) != b"\n":
        message = "Bad header: missing line break after </header>"
        logger.warning(message)
        warnings.append(message)
        stream.seek(data_start)

    return text, warnings


def parse_variable_header(text: str | None) -> list[tuple[str, str]]:
    """Split textual header content into ordered (key, value) pairs.

    Duplicate keys are kept. Anything after "#" on a line is a comment.
    Clauses without "=" are dropped.
    """
    pairs: list[tuple[str, str]] = []
    if not text:
        return pairs

    for line in text.split("\n"):
        line = line.split("#", 1)[0]
        for clause in line.split(";"):
            parts = clause.split("=")
            if len(parts) > 1:
                pairs.append((parts[0].strip(), parts[1].strip()))

    return pairs


def _read_exact(stream: BinaryIO, size: int, what: str) -> bytes:
    data = stream.read(size)
    if len(data) < size:
        raise CorruptedHeaderError(
            f"Corrupted SPro header: truncated {what} ({len(data)} of {size} bytes)"
        )
    return data


def read_fixed_header(stream: BinaryIO, options: SProOptions | None = None) -> SProHeader:
    """Read the fixed binary header at the current stream position.

    Raises:
        CorruptedHeaderError: If the feature size is negative or the stream
            ends inside the header.
    """
    options = options or SProOptions()

    (feature_size,) = _FEATURE_SIZE.unpack(_read_exact(stream, _FEATURE_SIZE.size, "feature size"))
    if feature_size < 0:
        raise CorruptedHeaderError(f"Corrupted SPro header: negative feature size ({feature_size})")

    (raw_flags,) = _CONTENT_FLAGS.unpack(_read_exact(stream, _CONTENT_FLAGS.size, "content flags"))
    if options.contentflags_64bit:
        _read_exact(stream, CONTENT_FLAGS_PADDING, "64-bit content flags")

    (frame_rate,) = _FRAME_RATE.unpack(_read_exact(stream, _FRAME_RATE.size, "frame rate"))

    return SProHeader(
        feature_size=feature_size,
        content_flags=decode_content_flags(raw_flags, options.flag_table),
        frame_rate=frame_rate,
        raw_flags=raw_flags,
    )
