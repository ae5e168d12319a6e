"""Exceptions raised while decoding SPro feature files."""


class SProError(Exception):
    """Base class for fatal SPro decoding errors."""


class OpenFailureError(SProError):
    """The SPro source could not be opened."""


class CorruptedHeaderError(SProError):
    """The fixed or textual header cannot be decoded."""


class InvalidDataSizeError(SProError):
    """Trailing bytes do not form a whole number of feature vectors.

    Attributes:
        remaining: Number of bytes after the fixed header.
        remainder: Leftover bytes that triggered the error.
        feature_size: Vector dimension from the fixed header.
    """

    def __init__(self, message: str, remaining: int, remainder: int, feature_size: int) -> None:
        super().__init__(message)
        self.remaining = remaining
        self.remainder = remainder
        self.feature_size = feature_size
