"""Tests for SPro header decoding."""

import io
import struct

import pytest

from sprokit.utils.io.errors import CorruptedHeaderError
from sprokit.utils.io.spro_header import (
    DEFAULT_FLAG_TABLE,
    DEFAULT_MAX_HEADER_BYTES,
    DOCUMENTED_FLAG_TABLE,
    FIXED_HEADER_SIZE,
    TEXT_HEADER_SKIP,
    SProOptions,
    decode_content_flags,
    locate_text_header,
    parse_variable_header,
    read_fixed_header,
)


HEADER_TEXT = (
    "\n"
    "sampling_rate = 16000 ; frame_shift=10 # analysis=fft\n"
    "key=a\n"
    "key = b;no_equals_here\n"
)


class TestLocateTextHeader:
    """Tests for locate_text_header."""

    def test_drops_leading_characters(self) -> None:
        """Test that the first 8 characters of the text are dropped by default."""
        stream = io.BytesIO(b"<header>\nsource=speech.wav\nrate=100\n</header>\nBINARY")

        text, warnings = locate_text_header(stream)

        assert text == "speech.wav\nrate=100\n"
        assert warnings == []
        assert stream.read() == b"BINARY"
        assert parse_variable_header(text) == [("rate", "100")]

    def test_short_text_is_empty(self) -> None:
        """Test that text shorter than the dropped prefix yields an empty string."""
        for body in (b"", b"abc=1", b"1234567", b"12345678"):
            stream = io.BytesIO(b"<header>" + body + b"</header>\nX")

            text, warnings = locate_text_header(stream)

            assert text == ""
            assert warnings == []
            assert stream.read() == b"X"

    def test_lossless(self) -> None:
        """Test that the lossless mode returns the text between the tags unchanged."""
        stream = io.BytesIO(b"<header>" + HEADER_TEXT.encode() + b"</header>\nBINARY")

        text, warnings = locate_text_header(stream, lossless=True)

        assert text == HEADER_TEXT
        assert warnings == []
        assert stream.read() == b"BINARY"

        text, _ = locate_text_header(io.BytesIO(b"<header>abc=1</header>\n"), lossless=True)
        assert text == "abc=1"

    def test_drop_count(self) -> None:
        """Test that exactly TEXT_HEADER_SKIP characters are dropped."""
        body = "0123456789abcdef"
        stream = io.BytesIO(b"<header>" + body.encode() + b"</header>\n")

        text, _ = locate_text_header(stream)

        assert TEXT_HEADER_SKIP == 8
        assert text == body[TEXT_HEADER_SKIP:] == "89abcdef"

    def test_missing_open_tag(self) -> None:
        """Test that a stream without <header> is rewound with a warning."""
        stream = io.BytesIO(b"\x0c\x00\x00\x00\x00\x00\x00\x00\xc8B")

        text, warnings = locate_text_header(stream)

        assert text is None
        assert len(warnings) == 1
        assert "<header>" in warnings[0]
        assert stream.tell() == 0

    def test_missing_line_break(self) -> None:
        """Test that the byte after </header> is kept when it is not a newline."""
        stream = io.BytesIO(b"<header>\ncomment\na=1</header>\x0c\x00")

        text, warnings = locate_text_header(stream)

        assert text == "a=1"
        assert len(warnings) == 1
        assert "line break" in warnings[0]
        assert stream.read() == b"\x0c\x00"

    def test_unterminated_header(self) -> None:
        """Test that a header without </header> is rejected."""
        stream = io.BytesIO(b"<header>a=1\nb=2\n")

        with pytest.raises(CorruptedHeaderError):
            locate_text_header(stream)

    def test_scan_bound(self) -> None:
        """Test that the closing tag must lie within max_header_bytes."""
        data = b"<header>" + b"x" * 64 + b"</header>\n"

        with pytest.raises(CorruptedHeaderError):
            locate_text_header(io.BytesIO(data), max_header_bytes=32)

        text, _ = locate_text_header(io.BytesIO(data), max_header_bytes=128)
        assert text == "x" * 56


class TestParseVariableHeader:
    """Tests for parse_variable_header."""

    def test_pairs_in_order(self) -> None:
        """Test clause splitting, comments and duplicate keys."""
        pairs = parse_variable_header(HEADER_TEXT)

        assert pairs == [
            ("sampling_rate", "16000"),
            ("frame_shift", "10"),
            ("key", "a"),
            ("key", "b"),
        ]

    def test_comment_ends_line(self) -> None:
        """Test that clauses after # are part of the comment."""
        assert parse_variable_header("a=1 # note; b=2\nc=3") == [("a", "1"), ("c", "3")]

    def test_empty(self) -> None:
        """Test empty and missing text."""
        assert parse_variable_header("") == []
        assert parse_variable_header(None) == []
        assert parse_variable_header("\n\n;;\n# only a comment") == []

    def test_extra_equals(self) -> None:
        """Test that only the segment after the first = is the value."""
        assert parse_variable_header("expr = a = b") == [("expr", "a")]

    def test_crlf_lines(self) -> None:
        """Test that carriage returns are trimmed with the value."""
        assert parse_variable_header("a=1\r\nb=2\r\n") == [("a", "1"), ("b", "2")]


class TestDecodeContentFlags:
    """Tests for decode_content_flags."""

    def test_energy_bit_sets_e_and_a(self) -> None:
        """Test that bit 0x01 yields both E and A with the default table."""
        flags = decode_content_flags(0x01)

        assert "E" in flags
        assert "A" in flags
        for letter in "ZNDR":
            assert letter not in flags

    def test_all_bits(self) -> None:
        """Test letter order when every known bit is set."""
        assert decode_content_flags(0x3F) == "EZNDAR"
        assert decode_content_flags(0x3F, DOCUMENTED_FLAG_TABLE) == "EZNDAR"

    def test_unknown_bits_ignored(self) -> None:
        """Test that bits outside the table are ignored."""
        assert decode_content_flags(0x40 | 0x80 | 0x100) == ""
        assert decode_content_flags(0x10) == ""

    def test_documented_table(self) -> None:
        """Test the mapping from the SPro documentation."""
        assert decode_content_flags(0x01, DOCUMENTED_FLAG_TABLE) == "E"
        assert decode_content_flags(0x10, DOCUMENTED_FLAG_TABLE) == "A"
        assert decode_content_flags(0x0A, DOCUMENTED_FLAG_TABLE) == "ZD"

    def test_default_table_is_inspectable(self) -> None:
        """Test that the A entry of the default table shares the E bit."""
        table = dict((letter, mask) for mask, letter in DEFAULT_FLAG_TABLE)
        assert table["A"] == table["E"] == 0x01


class TestReadFixedHeader:
    """Tests for read_fixed_header."""

    def test_read(self) -> None:
        """Test reading the 32-bit layout."""
        stream = io.BytesIO(struct.pack("<hIf", 12, 0x09, 100.0) + b"rest")

        header = read_fixed_header(stream)

        assert header.feature_size == 12
        assert header.raw_flags == 0x09
        assert header.content_flags == "EDA"
        assert header.frame_rate == 100.0
        assert stream.tell() == FIXED_HEADER_SIZE

    def test_read_64bit_flags(self) -> None:
        """Test that 4 padding bytes are skipped in 64-bit mode."""
        stream = io.BytesIO(struct.pack("<hIIf", 20, 0x02, 0, 62.5))

        header = read_fixed_header(stream, SProOptions(contentflags_64bit=True))

        assert header.feature_size == 20
        assert header.content_flags == "Z"
        assert header.frame_rate == 62.5
        assert stream.tell() == FIXED_HEADER_SIZE + 4

    def test_negative_feature_size(self) -> None:
        """Test that a negative dimension is fatal."""
        stream = io.BytesIO(struct.pack("<hIf", -1, 0, 100.0) + b"\x00" * 64)

        with pytest.raises(CorruptedHeaderError, match="negative"):
            read_fixed_header(stream)

    def test_truncated(self) -> None:
        """Test that a stream ending inside the header is fatal."""
        with pytest.raises(CorruptedHeaderError, match="truncated"):
            read_fixed_header(io.BytesIO(struct.pack("<hI", 4, 0)))

    def test_custom_flag_table(self) -> None:
        """Test that the flag table comes from the options."""
        stream = io.BytesIO(struct.pack("<hIf", 1, 0x11, 100.0))

        header = read_fixed_header(stream, SProOptions(flag_table=DOCUMENTED_FLAG_TABLE))

        assert header.content_flags == "EA"


class TestSProOptions:
    """Tests for SProOptions."""

    def test_defaults(self) -> None:
        """Test default option values."""
        options = SProOptions()

        assert options.contentflags_64bit is False
        assert options.flag_table == DEFAULT_FLAG_TABLE
        assert options.max_header_bytes == DEFAULT_MAX_HEADER_BYTES
        assert options.lossless_text_header is False
        assert options.fixed_header_size == FIXED_HEADER_SIZE

    def test_from_env(self) -> None:
        """Test building options from environment variables."""
        options = SProOptions.from_env(
            {"SPRO_CONTENTFLAGS_64BITS": "1", "SPRO_MAX_HEADER_BYTES": "4096"}
        )

        assert options.contentflags_64bit is True
        assert options.max_header_bytes == 4096
        assert options.fixed_header_size == FIXED_HEADER_SIZE + 4

        assert SProOptions.from_env({}).contentflags_64bit is False
        assert SProOptions.from_env({"SPRO_CONTENTFLAGS_64BITS": "no"}).contentflags_64bit is False

    def test_from_env_lossless_text_header(self) -> None:
        """Test the lossless text header switch from the environment."""
        assert SProOptions.from_env({"SPRO_LOSSLESS_TEXT_HEADER": "true"}).lossless_text_header
        assert not SProOptions.from_env({}).lossless_text_header

    def test_invalid_scan_bound(self) -> None:
        """Test that a non-positive scan bound is rejected."""
        with pytest.raises(ValueError):
            SProOptions(max_header_bytes=0)
