"""SPro feature file reader.

This module decodes SPro feature files into NumPy matrices. See
``spro_header`` for the on-disk layout of the headers.

The decoder runs three stages over one stream:
1. Locate and parse the optional textual header.
2. Read the fixed binary header.
3. Check that the remaining bytes hold a whole number of float32 vectors and
   read them as an (N, feature_size) matrix.

Fatal problems raise ``SProError`` subclasses and no partial result is
returned. Non-fatal problems with the textual header are collected in the
``warnings`` list of the result.
"""

import dataclasses
import io
import os
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, BinaryIO, Iterator, Union

import numpy as np

from ..logging import get_logger
from .errors import InvalidDataSizeError, OpenFailureError
from .spro_header import (
    SProHeader,
    SProOptions,
    locate_text_header,
    parse_variable_header,
    read_fixed_header,
)


logger = get_logger(__name__)

# On-disk element type of feature vectors
SPRO_DTYPE = np.dtype("<f4")

SProSource = Union[str, Path, bytes, bytearray, memoryview, BinaryIO]


@dataclass
class SProData:
    """Decoded SPro file.

    Attributes:
        features: Matrix of shape (vector_count, feature_size).
        header: Fixed header fields.
        variable_header: (key, value) pairs of the textual header, in order.
        warnings: Non-fatal problems found while decoding.
    """

    features: np.ndarray
    header: SProHeader
    variable_header: list[tuple[str, str]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def as_tuple(self) -> tuple[np.ndarray, SProHeader, list[tuple[str, str]]]:
        return self.features, self.header, self.variable_header


@dataclass
class SProLayout:
    """Header information and data location of an SPro stream."""

    header: SProHeader
    variable_header: list[tuple[str, str]]
    warnings: list[str]
    text_header_present: bool
    data_offset: int
    data_size: int
    vector_count: int


@contextmanager
def open_spro_source(source: SProSource) -> Iterator[BinaryIO]:
    """Open an SPro source as a seekable binary stream.

    Paths and in-memory buffers are closed on exit. File objects are used
    from their current position and left open for the caller.

    Raises:
        OpenFailureError: If a path cannot be opened.
    """
    if isinstance(source, (bytes, bytearray, memoryview)):
        with io.BytesIO(source) as stream:
            yield stream
        return

    if hasattr(source, "read") and hasattr(source, "seek"):
        yield source
        return

    path = Path(source)
    try:
        stream = open(path, "rb")
    except OSError as exc:
        raise OpenFailureError(f'Cannot open file "{path}": {exc}') from exc

    with stream:
        yield stream


def _invalid_size(remaining: int, remainder: int, feature_size: int) -> InvalidDataSizeError:
    message = (
        f"Invalid data size: {remaining} bytes after the header do not hold a whole "
        f"number of {feature_size}-dimensional float32 vectors (remainder {remainder})."
    )
    if remainder == 4:
        message += (
            " It seems the content flags field is 64 bits wide; "
            "decode with contentflags_64bit=True."
        )
    return InvalidDataSizeError(message, remaining, remainder, feature_size)


def check_data_size(remaining: int, feature_size: int) -> int:
    """Validate the byte count following the fixed header.

    The count must be a multiple of ``feature_size`` and of the vector size in
    bytes. A zero feature size is always invalid, with the whole payload as
    remainder.

    Returns:
        Number of feature vectors.

    Raises:
        InvalidDataSizeError: If the bytes do not form whole vectors.
    """
    if feature_size == 0:
        raise _invalid_size(remaining, remaining, feature_size)

    vector_bytes = feature_size * SPRO_DTYPE.itemsize
    for divisor in (feature_size, vector_bytes):
        remainder = remaining % divisor
        if remainder:
            raise _invalid_size(remaining, remainder, feature_size)

    return remaining // vector_bytes


def read_layout(stream: BinaryIO, options: SProOptions | None = None) -> SProLayout:
    """Decode both headers and validate the payload size.

    On return the stream is positioned at the first feature vector.
    """
    options = options or SProOptions()

    text, warnings = locate_text_header(
        stream, options.max_header_bytes, options.lossless_text_header
    )
    variable_header = parse_variable_header(text)
    header = read_fixed_header(stream, options)

    data_offset = stream.tell()
    end_offset = stream.seek(0, os.SEEK_END)
    stream.seek(data_offset)

    data_size = end_offset - data_offset
    vector_count = check_data_size(data_size, header.feature_size)

    return SProLayout(
        header=header,
        variable_header=variable_header,
        warnings=warnings,
        text_header_present=text is not None,
        data_offset=data_offset,
        data_size=data_size,
        vector_count=vector_count,
    )


def read_features(
    stream: BinaryIO,
    feature_size: int,
    dtype: Any = np.float64,
) -> np.ndarray:
    """Read every remaining vector of the stream.

    Args:
        stream: Binary stream positioned at the first feature vector.
        feature_size: Vector dimension from the fixed header.
        dtype: Float type the float32 data is widened to.

    Returns:
        Array of shape (vector_count, feature_size), first frame first.

    Raises:
        InvalidDataSizeError: If the remaining bytes do not form whole vectors.
    """
    data_offset = stream.tell()
    end_offset = stream.seek(0, os.SEEK_END)
    stream.seek(data_offset)

    vector_count = check_data_size(end_offset - data_offset, feature_size)

    data = stream.read(vector_count * feature_size * SPRO_DTYPE.itemsize)
    return np.frombuffer(data, dtype=SPRO_DTYPE).reshape(vector_count, feature_size).astype(dtype)


def read_spro(
    source: SProSource,
    options: SProOptions | None = None,
    *,
    contentflags_64bit: bool | None = None,
) -> SProData:
    """Decode an SPro feature file.

    Args:
        source: Path, in-memory buffer, or seekable binary file object.
        options: Decoding options (defaults to ``SProOptions()``).
        contentflags_64bit: Overrides ``options.contentflags_64bit`` when set.

    Returns:
        SProData with the feature matrix, fixed header, textual header pairs
        and warnings.

    Raises:
        OpenFailureError: If the source cannot be opened.
        CorruptedHeaderError: If the headers cannot be decoded.
        InvalidDataSizeError: If the payload is not a whole number of vectors.
    """
    options = options or SProOptions()
    if contentflags_64bit is not None:
        options = dataclasses.replace(options, contentflags_64bit=contentflags_64bit)

    with open_spro_source(source) as stream:
        layout = read_layout(stream, options)
        features = read_features(stream, layout.header.feature_size, options.dtype)

    logger.debug(
        "Decoded SPro data: %d vectors x %d, flags=%r, frame rate=%s",
        features.shape[0],
        layout.header.feature_size,
        layout.header.content_flags,
        layout.header.frame_rate,
    )
    return SProData(
        features=features,
        header=layout.header,
        variable_header=layout.variable_header,
        warnings=layout.warnings,
    )


class SProReader:
    """Reader for SPro feature files.

    Supports:
    - Metadata extraction from the headers without loading the data
    - Memory-mapped or in-memory loading
    - Sequential and random access to vectors

    Assumptions:
    - Feature data is float32 little-endian, row-major
    - The file does not change while the reader is open
    """

    def __init__(
        self,
        file_path: str | Path,
        options: SProOptions | None = None,
        mmap_mode: bool = False,
    ) -> None:
        """Initialize the SPro reader.

        Args:
            file_path: Path to the SPro file.
            options: Decoding options (defaults to ``SProOptions()``).
            mmap_mode: If True, memory-map the raw float32 data instead of
                loading a widened copy.
        """
        self.file_path = Path(file_path)
        self.options = options or SProOptions()
        self.mmap_mode = mmap_mode
        self._array: np.ndarray | None = None
        self._layout: SProLayout | None = None
        self._metadata: dict[str, Any] | None = None

    def _read_layout(self) -> SProLayout:
        if self._layout is None:
            with open_spro_source(self.file_path) as stream:
                self._layout = read_layout(stream, self.options)
        return self._layout

    @property
    def header(self) -> SProHeader:
        return self._read_layout().header

    @property
    def variable_header(self) -> list[tuple[str, str]]:
        return self._read_layout().variable_header

    @property
    def warnings(self) -> list[str]:
        return self._read_layout().warnings

    def get_metadata(self) -> dict[str, Any]:
        """Extract metadata from the SPro headers.

        Returns:
            Dictionary containing:
            - file_path: Path to the file
            - format: 'spro'
            - vector_count: Number of vectors
            - dimension: Vector dimension
            - dtype: On-disk data type (float32)
            - shape: (vector_count, dimension)
            - content_flags: Flag letters
            - raw_flags: Content flags bitmask
            - frame_rate: Vectors per second
            - duration_seconds: vector_count / frame_rate (None if rate <= 0)
            - data_offset: Byte offset of the first vector
            - text_header_present: Whether a <header> block was found
            - variable_header: Textual header (key, value) pairs
            - warnings: Non-fatal decoding problems
            - file_size_bytes: Size of the file in bytes
            - file_size_mb: Size of the file in megabytes
        """
        if self._metadata is not None:
            return self._metadata

        layout = self._read_layout()
        header = layout.header
        file_size = self.file_path.stat().st_size

        self._metadata = {
            "file_path": str(self.file_path),
            "format": "spro",
            "vector_count": layout.vector_count,
            "dimension": header.feature_size,
            "dtype": "float32",
            "shape": (layout.vector_count, header.feature_size),
            "content_flags": header.content_flags,
            "raw_flags": header.raw_flags,
            "frame_rate": header.frame_rate,
            "duration_seconds": (
                layout.vector_count / header.frame_rate if header.frame_rate > 0 else None
            ),
            "data_offset": layout.data_offset,
            "text_header_present": layout.text_header_present,
            "variable_header": list(layout.variable_header),
            "warnings": list(layout.warnings),
            "file_size_bytes": file_size,
            "file_size_mb": round(file_size / (1024 * 1024), 2),
        }

        return self._metadata

    def load(self) -> np.ndarray:
        """Load the feature matrix.

        Returns:
            Array of shape (vector_count, dimension). Memory-mapped float32
            in mmap mode, otherwise widened to ``options.dtype``.
        """
        if self._array is not None:
            return self._array

        layout = self._read_layout()
        shape = (layout.vector_count, layout.header.feature_size)

        if self.mmap_mode and layout.vector_count > 0:
            self._array = np.memmap(
                str(self.file_path),
                dtype=SPRO_DTYPE,
                mode="r",
                offset=layout.data_offset,
                shape=shape,
            )
        else:
            with open_spro_source(self.file_path) as stream:
                stream.seek(layout.data_offset)
                self._array = read_features(stream, layout.header.feature_size, self.options.dtype)

        return self._array

    def sample(self, start: int = 0, count: int = 10) -> np.ndarray:
        """Sample vectors from the file.

        Args:
            start: Starting index for sampling.
            count: Number of vectors to sample.

        Returns:
            NumPy array containing the sampled vectors.
        """
        array = self.load()
        return np.array(array[start:start + count])

    def get_vector(self, index: int) -> np.ndarray:
        """Get a single feature vector by index."""
        array = self.load()
        return np.array(array[index])

    def read_sequential(
        self, start: int = 0, count: int | None = None, chunk_size: int = 1000
    ) -> Iterator[np.ndarray]:
        """Generator for sequential reading of vectors in chunks.

        Args:
            start: Starting index.
            count: Number of vectors to read (None for all remaining).
            chunk_size: Number of vectors per chunk.

        Yields:
            Arrays of at most chunk_size vectors, widened to ``options.dtype``.
        """
        layout = self._read_layout()
        dimension = layout.header.feature_size
        total = layout.vector_count

        if count is None:
            count = total - start

        end = min(start + count, total)
        vector_bytes = dimension * SPRO_DTYPE.itemsize

        with open_spro_source(self.file_path) as stream:
            current = start
            while current < end:
                chunk_count = min(chunk_size, end - current)
                stream.seek(layout.data_offset + current * vector_bytes)
                data = stream.read(chunk_count * vector_bytes)
                chunk = np.frombuffer(data, dtype=SPRO_DTYPE).reshape(chunk_count, dimension)
                yield chunk.astype(self.options.dtype)
                current += chunk_count

    def __len__(self) -> int:
        """Return the number of feature vectors."""
        return self._read_layout().vector_count

    def close(self) -> None:
        """Close the reader and release resources."""
        if self._array is not None:
            del self._array
            self._array = None
