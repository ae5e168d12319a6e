"""Validation helpers for SPro feature files.

This module runs the SPro decoding stages one by one and records the outcome
of each check instead of raising, so a single pass reports every problem the
decoder would stop on as well as the non-fatal ones.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

import numpy as np

from .io import (
    CorruptedHeaderError,
    InvalidDataSizeError,
    OpenFailureError,
    SProOptions,
    locate_text_header,
    open_spro_source,
    parse_variable_header,
    read_fixed_header,
)
from .io.spro_reader import SPRO_DTYPE, check_data_size
from .logging import get_logger


logger = get_logger(__name__)

Severity = str


@dataclass
class ValidationEntry:
    """A single validation check result."""

    check: str
    result: str
    details: str
    severity: Severity

    def to_dict(self) -> dict[str, str]:
        return {"check": self.check, "result": self.result, "details": self.details}


@dataclass
class ValidationReport:
    """Structured validation results and associated logs."""

    format: str
    entries: list[ValidationEntry] = field(default_factory=list)
    logs: list[tuple[str, str]] = field(default_factory=list)

    def add_entry(self, check: str, result: str, details: str, severity: Severity) -> None:
        self.entries.append(ValidationEntry(check, result, details, severity))

    def add_log(self, message: str, level: str = "INFO") -> None:
        self.logs.append((message, level))
        logger.log(logging.getLevelName(level), message)

    @property
    def valid(self) -> bool:
        return not any(entry.severity in ("error", "fatal") for entry in self.entries)

    def to_dict(self) -> dict:
        buckets: dict[str, list[dict[str, str]] | str] = {
            "format": self.format,
            "errors": [],
            "warnings": [],
            "passed": [],
            "fatal": [],
            "info": [],
        }

        for entry in self.entries:
            record = entry.to_dict()
            if entry.severity == "warning":
                buckets["warnings"].append(record)
            elif entry.severity == "error":
                buckets["errors"].append(record)
            elif entry.severity == "fatal":
                buckets["fatal"].append(record)
            elif entry.severity == "info":
                buckets["info"].append(record)
            else:
                buckets["passed"].append(record)

        return buckets


class FileValidator:
    """Validate SPro files with progress reporting."""

    def __init__(
        self,
        options: SProOptions | None = None,
        progress_callback: Callable[[int, int], None] | None = None,
    ) -> None:
        self.options = options or SProOptions()
        self._progress_callback = progress_callback

    def validate(self, file_path: str | Path) -> ValidationReport:
        path = Path(file_path)
        report = ValidationReport("spro")

        steps = 4
        current_step = 0

        def step() -> None:
            nonlocal current_step
            current_step += 1
            if self._progress_callback:
                self._progress_callback(current_step, steps)

        try:
            self._validate_spro(path, report, step)
        except OpenFailureError as exc:
            report.add_entry("File readable", "Failed", str(exc), "fatal")
        finally:
            if self._progress_callback:
                self._progress_callback(steps, steps)

        return report

    def _validate_spro(
        self,
        path: Path,
        report: ValidationReport,
        step: Callable[[], None],
    ) -> None:
        if not path.exists():
            report.add_entry("File exists", "Missing", "File not found", "fatal")
            return

        file_size = path.stat().st_size
        if file_size <= 0:
            report.add_entry("File size", "Invalid", "File is empty", "fatal")
            return

        with open_spro_source(path) as stream:
            report.add_entry("File readable", "OK", "", "ok")

            step()
            try:
                text, warnings = locate_text_header(
                    stream, self.options.max_header_bytes, self.options.lossless_text_header
                )
            except CorruptedHeaderError as exc:
                report.add_entry("Text header", "Invalid", str(exc), "fatal")
                return

            for warning in warnings:
                report.add_entry("Text header", "Warning", warning, "warning")
            if text is not None:
                pairs = parse_variable_header(text)
                report.add_entry("Text header", "OK", f"{len(pairs)} fields", "ok")

            step()
            try:
                header = read_fixed_header(stream, self.options)
            except CorruptedHeaderError as exc:
                report.add_entry("Fixed header", "Invalid", str(exc), "fatal")
                return

            report.add_entry(
                "Fixed header",
                "OK",
                f"dim={header.feature_size}, flags={header.content_flags or '-'}, "
                f"rate={header.frame_rate:g}",
                "ok",
            )

            if 1 <= header.feature_size <= 1024:
                report.add_entry("Dimension range", "OK", str(header.feature_size), "ok")
            else:
                report.add_entry("Dimension range", "Warning", str(header.feature_size), "warning")

            if np.isfinite(header.frame_rate) and header.frame_rate > 0:
                report.add_entry("Frame rate", "OK", f"{header.frame_rate:g}", "ok")
            else:
                report.add_entry("Frame rate", "Warning", f"{header.frame_rate!r}", "warning")

            step()
            data_offset = stream.tell()
            remaining = file_size - data_offset
            try:
                vector_count = check_data_size(remaining, header.feature_size)
            except InvalidDataSizeError as exc:
                report.add_entry("Data size", "Invalid", str(exc), "error")
                if exc.remainder == 4 and not self.options.contentflags_64bit:
                    self._check_64bit_layout(path, report)
                return

            report.add_entry(
                "Data size", "OK", f"{vector_count} vectors from offset {data_offset}", "ok"
            )

            step()
            if vector_count == 0:
                report.add_entry("Sample", "Info", "No feature vectors", "info")
            else:
                vector = np.frombuffer(
                    stream.read(header.feature_size * SPRO_DTYPE.itemsize), dtype=SPRO_DTYPE
                )
                if np.isnan(vector).any() or np.isinf(vector).any():
                    report.add_entry("Sample integrity", "Invalid", "NaN/Inf detected", "error")
                elif np.all(vector == 0):
                    report.add_entry("Sample integrity", "Warning", "All zeros vector", "warning")
                else:
                    report.add_entry("Sample integrity", "OK", "Values look valid", "ok")

        report.add_log(
            f"Validated SPro: dim={header.feature_size}, vectors={vector_count}, "
            f"rate={header.frame_rate:g}"
        )

    def _check_64bit_layout(self, path: Path, report: ValidationReport) -> None:
        """Retry the fixed header with 64-bit content flags."""
        options = dataclasses.replace(self.options, contentflags_64bit=True)
        with open_spro_source(path) as stream:
            try:
                locate_text_header(stream, options.max_header_bytes, options.lossless_text_header)
                header = read_fixed_header(stream, options)
                data_offset = stream.tell()
                check_data_size(path.stat().st_size - data_offset, header.feature_size)
            except (CorruptedHeaderError, InvalidDataSizeError):
                return

        report.add_entry(
            "64-bit content flags",
            "Suggested",
            "File decodes with contentflags_64bit=True",
            "info",
        )
        report.add_log("File layout matches the 64-bit content flags encoder", "WARNING")
