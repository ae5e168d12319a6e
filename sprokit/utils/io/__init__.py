"""I/O utilities for reading SPro feature files."""

from .errors import (
    CorruptedHeaderError,
    InvalidDataSizeError,
    OpenFailureError,
    SProError,
)
from .spro_header import (
    DEFAULT_FLAG_TABLE,
    DOCUMENTED_FLAG_TABLE,
    FIXED_HEADER_SIZE,
    TEXT_HEADER_SKIP,
    SProHeader,
    SProOptions,
    decode_content_flags,
    locate_text_header,
    parse_variable_header,
    read_fixed_header,
)
from .spro_reader import (
    SProData,
    SProReader,
    open_spro_source,
    read_features,
    read_spro,
)
from .spro_converter import (
    SProConverter,
    convert_spro_to_hdf5,
    convert_spro_to_npy,
)

__all__ = [
    "SProError",
    "OpenFailureError",
    "CorruptedHeaderError",
    "InvalidDataSizeError",
    "DEFAULT_FLAG_TABLE",
    "DOCUMENTED_FLAG_TABLE",
    "FIXED_HEADER_SIZE",
    "TEXT_HEADER_SKIP",
    "SProHeader",
    "SProOptions",
    "decode_content_flags",
    "locate_text_header",
    "parse_variable_header",
    "read_fixed_header",
    "SProData",
    "SProReader",
    "open_spro_source",
    "read_features",
    "read_spro",
    "SProConverter",
    "convert_spro_to_npy",
    "convert_spro_to_hdf5",
]
