"""SPro export utilities.

This module provides chunked export of decoded SPro feature files:
- SPro → NPY conversion
- SPro → HDF5 conversion (header fields stored as dataset attributes)

Features:
- Chunked processing to avoid memory issues with large files
- Progress callbacks for UI integration
- Dry-run mode to preview conversion without writing
- Verbose logging option
- Atomic writes via temporary files

Safety Guarantees:
- Output is written to a temp file first, then atomically renamed
- On cancellation, partial outputs are cleaned up
- Source files are never modified
"""

import os
import tempfile
from pathlib import Path
from typing import Any, Callable

import h5py
import numpy as np

from ..logging import get_logger
from .spro_header import SProOptions
from .spro_reader import SProReader


logger = get_logger(__name__)

# Default chunk size (number of vectors per chunk)
DEFAULT_CHUNK_SIZE = 10000


class SProConverter:
    """Converter for SPro feature files.

    Supports:
    - SPro to NPY conversion
    - SPro to HDF5 conversion
    - Chunked processing for memory efficiency
    - Progress callbacks for UI integration
    - Dry-run mode for preview
    """

    def __init__(
        self,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        options: SProOptions | None = None,
        progress_callback: Callable[[int, int], None] | None = None,
        verbose: bool = False,
        log_callback: Callable[[str], None] | None = None,
    ) -> None:
        """Initialize the converter.

        Args:
            chunk_size: Number of vectors to process per chunk.
            options: SPro decoding options for the source files.
            progress_callback: Optional callback function(current, total) for progress.
            verbose: If True, emit detailed log messages.
            log_callback: Optional callback for log messages (verbose mode).
        """
        self.chunk_size = chunk_size
        self.options = options or SProOptions()
        self.progress_callback = progress_callback
        self.verbose = verbose
        self.log_callback = log_callback
        self._cancelled = False

    def cancel(self) -> None:
        """Request cancellation of the current operation."""
        self._cancelled = True

    def _log(self, message: str) -> None:
        """Emit a log message, forwarding to the callback in verbose mode."""
        logger.debug(message)
        if self.verbose and self.log_callback:
            self.log_callback(message)

    def _report_progress(self, current: int, total: int) -> None:
        """Report progress if callback is set."""
        if self.progress_callback:
            self.progress_callback(current, total)

    def _open_reader(self, input_path: Path) -> tuple[SProReader, dict[str, Any]]:
        if not input_path.exists():
            raise FileNotFoundError(f"Input file not found: {input_path}")

        self._log(f"Reading SPro headers from {input_path}")
        reader = SProReader(input_path, options=self.options)
        metadata = reader.get_metadata()
        for warning in metadata["warnings"]:
            self._log(f"Warning: {warning}")
        return reader, metadata

    def spro_to_npy(
        self,
        input_path: str | Path,
        output_path: str | Path,
        dtype: Any = np.float32,
        dry_run: bool = False,
    ) -> dict[str, Any]:
        """Convert an SPro file to NPY format.

        Args:
            input_path: Path to the input SPro file.
            output_path: Path for the output .npy file.
            dtype: Data type of the output array.
            dry_run: If True, only validate and return metadata without writing.

        Returns:
            Dictionary containing:
            - input_path: Path to input file
            - output_path: Path to output file
            - vector_count: Number of vectors
            - dimension: Vector dimension
            - shape: Output array shape
            - dtype: Output data type
            - frame_rate: Vectors per second
            - content_flags: Flag letters
            - dry_run: Whether this was a dry run

        Raises:
            FileNotFoundError: If input file doesn't exist.
            SProError: If the input cannot be decoded.
            RuntimeError: If conversion is cancelled.
        """
        self._cancelled = False
        input_path = Path(input_path)
        output_path = Path(output_path)

        reader, metadata = self._open_reader(input_path)
        num_vectors = metadata["vector_count"]
        dimension = metadata["dimension"]
        dtype = np.dtype(dtype)

        result = {
            "input_path": str(input_path),
            "output_path": str(output_path),
            "vector_count": num_vectors,
            "dimension": dimension,
            "shape": (num_vectors, dimension),
            "dtype": str(dtype),
            "frame_rate": metadata["frame_rate"],
            "content_flags": metadata["content_flags"],
            "dry_run": dry_run,
        }

        if dry_run:
            self._log("Dry run mode: no file written")
            result["expected_size_bytes"] = 128 + num_vectors * dimension * dtype.itemsize
            return result

        self._log(f"Converting {num_vectors} vectors to NPY format")
        output_path.parent.mkdir(parents=True, exist_ok=True)

        fd, temp_path_str = tempfile.mkstemp(suffix=".npy.tmp", dir=output_path.parent)
        temp_path = Path(temp_path_str)
        os.close(fd)

        try:
            output_array = np.lib.format.open_memmap(
                str(temp_path),
                mode="w+",
                dtype=dtype,
                shape=(num_vectors, dimension),
            )

            processed = 0
            for chunk in reader.read_sequential(chunk_size=self.chunk_size):
                if self._cancelled:
                    del output_array
                    temp_path.unlink(missing_ok=True)
                    raise RuntimeError("Conversion cancelled")

                chunk_end = processed + len(chunk)
                output_array[processed:chunk_end] = chunk
                processed = chunk_end
                self._report_progress(processed, num_vectors)
                self._log(f"Processed {processed:,}/{num_vectors:,} vectors")

            # Flush to disk
            del output_array

            temp_path.replace(output_path)
            result["file_size_bytes"] = output_path.stat().st_size
            self._log(f"Conversion complete: {output_path}")

        except Exception:
            temp_path.unlink(missing_ok=True)
            raise

        finally:
            reader.close()

        return result

    def spro_to_hdf5(
        self,
        input_path: str | Path,
        output_path: str | Path,
        dataset_name: str = "features",
        dtype: Any = np.float32,
        compression: str | None = "gzip",
        compression_opts: int | None = 4,
        dry_run: bool = False,
    ) -> dict[str, Any]:
        """Convert an SPro file to HDF5 format.

        The fixed header is stored in the dataset attributes ``feature_size``,
        ``content_flags``, ``raw_flags`` and ``frame_rate``. The textual header
        is stored as a (key, value) string array under ``variable_header``.

        Args:
            input_path: Path to the input SPro file.
            output_path: Path for the output .h5 file.
            dataset_name: Name for the dataset in HDF5 file.
            dtype: Data type of the output dataset.
            compression: Compression algorithm (None, 'gzip', 'lzf').
            compression_opts: Compression level (for gzip: 0-9).
            dry_run: If True, only validate and return metadata without writing.

        Returns:
            Dictionary with conversion statistics.

        Raises:
            FileNotFoundError: If input file doesn't exist.
            SProError: If the input cannot be decoded.
            RuntimeError: If conversion is cancelled.
        """
        self._cancelled = False
        input_path = Path(input_path)
        output_path = Path(output_path)

        reader, metadata = self._open_reader(input_path)
        num_vectors = metadata["vector_count"]
        dimension = metadata["dimension"]
        dtype = np.dtype(dtype)

        result = {
            "input_path": str(input_path),
            "output_path": str(output_path),
            "vector_count": num_vectors,
            "dimension": dimension,
            "shape": (num_vectors, dimension),
            "dtype": str(dtype),
            "frame_rate": metadata["frame_rate"],
            "content_flags": metadata["content_flags"],
            "dataset_name": dataset_name,
            "compression": compression,
            "dry_run": dry_run,
        }

        if dry_run:
            self._log("Dry run mode: no file written")
            return result

        self._log(f"Converting {num_vectors} vectors to HDF5 format")
        output_path.parent.mkdir(parents=True, exist_ok=True)

        fd, temp_path_str = tempfile.mkstemp(suffix=".h5.tmp", dir=output_path.parent)
        temp_path = Path(temp_path_str)
        os.close(fd)

        try:
            with h5py.File(str(temp_path), "w") as f:
                chunks = (
                    (min(self.chunk_size, num_vectors), dimension)
                    if num_vectors and dimension
                    else None
                )
                dataset = f.create_dataset(
                    dataset_name,
                    shape=(num_vectors, dimension),
                    dtype=dtype,
                    chunks=chunks,
                    compression=compression if chunks else None,
                    compression_opts=compression_opts if compression and chunks else None,
                )

                dataset.attrs["source_file"] = str(input_path)
                dataset.attrs["source_format"] = "spro"
                dataset.attrs["feature_size"] = dimension
                dataset.attrs["content_flags"] = metadata["content_flags"]
                dataset.attrs["raw_flags"] = metadata["raw_flags"]
                dataset.attrs["frame_rate"] = metadata["frame_rate"]
                if metadata["variable_header"]:
                    dataset.attrs["variable_header"] = np.array(
                        metadata["variable_header"], dtype=h5py.string_dtype()
                    )

                processed = 0
                for chunk in reader.read_sequential(chunk_size=self.chunk_size):
                    if self._cancelled:
                        raise RuntimeError("Conversion cancelled")

                    chunk_end = processed + len(chunk)
                    dataset[processed:chunk_end] = chunk
                    processed = chunk_end
                    self._report_progress(processed, num_vectors)
                    self._log(f"Processed {processed:,}/{num_vectors:,} vectors")

            temp_path.replace(output_path)
            result["file_size_bytes"] = output_path.stat().st_size
            self._log(f"Conversion complete: {output_path}")

        except Exception:
            temp_path.unlink(missing_ok=True)
            raise

        finally:
            reader.close()

        return result


# Convenience functions

def convert_spro_to_npy(
    input_path: str | Path,
    output_path: str | Path,
    options: SProOptions | None = None,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    dry_run: bool = False,
    progress_callback: Callable[[int, int], None] | None = None,
) -> dict[str, Any]:
    """Convenience function for SPro to NPY conversion.

    Args:
        input_path: Path to the input SPro file.
        output_path: Path for the output .npy file.
        options: SPro decoding options.
        chunk_size: Number of vectors per processing chunk.
        dry_run: If True, only validate without writing.
        progress_callback: Optional callback function(current, total).

    Returns:
        Dictionary with conversion statistics.
    """
    converter = SProConverter(
        chunk_size=chunk_size,
        options=options,
        progress_callback=progress_callback,
    )
    return converter.spro_to_npy(input_path, output_path, dry_run=dry_run)


def convert_spro_to_hdf5(
    input_path: str | Path,
    output_path: str | Path,
    options: SProOptions | None = None,
    dataset_name: str = "features",
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    compression: str | None = "gzip",
    progress_callback: Callable[[int, int], None] | None = None,
) -> dict[str, Any]:
    """Convenience function for SPro to HDF5 conversion."""
    converter = SProConverter(
        chunk_size=chunk_size,
        options=options,
        progress_callback=progress_callback,
    )
    return converter.spro_to_hdf5(
        input_path, output_path,
        dataset_name=dataset_name,
        compression=compression,
    )
