"""
Helper Functions and Utilities

This module provides the small, shared building blocks used throughout the
BOLDKit package: logging configuration, streaming TSV/FASTA access, atomic
output files and a few numeric/hash helpers.

Key Utilities:
1. Logging Configuration
   - Centralized logging setup for the "boldkit" package logger
   - Console and optional file output

2. Input Streaming
   - Chunked BOLD TSV reading with header validation (pandas)
   - FASTA iteration through Biopython (plain or gzip-compressed)

3. Output Handling
   - Atomic writes: outputs only appear under their final name once a run
     has completed successfully
   - Output directory creation

4. Hash and Arithmetic Helpers
   - MD5 digests of sequences and labels used for stable ordering
   - Integer ceiling division used by split quotas

Example Usage:
    >>> from boldkit.utils import setup_logging, iter_fasta
    >>> logger = setup_logging(log_level="DEBUG")
    >>> for record_id, sequence in iter_fasta("COI-5P.fasta.gz"):
    ...     print(record_id, len(sequence))
"""

from contextlib import contextmanager
from pathlib import Path
from typing import IO, Iterator, List, Optional, Tuple, Union
import csv
import gzip
import hashlib
import logging
import os
import sys
import tempfile

import pandas as pd
from Bio import SeqIO

# Configure module logger
logger = logging.getLogger(__name__)

# Default number of TSV rows held in memory at once
DEFAULT_CHUNK_SIZE = 100_000

# Receives any field past the last header column
_OVERFLOW_COLUMN = "__boldkit_overflow__"


class InputFormatError(ValueError):
    """Structural problem in an input file (missing headers, empty file, bad rows)."""
    pass


# ============================================================================
# Logging Configuration
# ============================================================================

def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    format_string: Optional[str] = None,
) -> logging.Logger:
    """
    Configure logging for BOLDKit.

    Sets up the package logger with console and optional file output.

    Parameters
    ----------
    log_level : str, optional
        Logging level: DEBUG, INFO, WARNING, ERROR, or CRITICAL (default: INFO)
    log_file : str, optional
        Path to log file. If None, logs only to console (default: None)
    format_string : str, optional
        Custom format string for log messages. If None, uses default format

    Returns
    -------
    logging.Logger
        Configured logger instance

    Notes
    -----
    The default format includes timestamp, level, and message:
    [2025-11-03 10:30:45] INFO: split: records=1200 classes=40
    """
    package_logger = logging.getLogger("boldkit")
    package_logger.setLevel(getattr(logging, log_level.upper()))

    # Remove existing handlers to avoid duplicates
    package_logger.handlers.clear()

    if format_string is None:
        format_string = "[%(asctime)s] %(levelname)s: %(message)s"

    formatter = logging.Formatter(format_string, datefmt="%Y-%m-%d %H:%M:%S")

    # Progress and summaries go to stderr so stdout stays usable in pipes
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(getattr(logging, log_level.upper()))
    console_handler.setFormatter(formatter)
    package_logger.addHandler(console_handler)

    if log_file is not None:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_file, mode='a', encoding='utf-8')
        file_handler.setLevel(getattr(logging, log_level.upper()))
        file_handler.setFormatter(formatter)
        package_logger.addHandler(file_handler)

        package_logger.info(f"Logging to file: {log_file}")

    return package_logger


# ============================================================================
# File I/O and Path Handling
# ============================================================================

def create_output_directory(output_dir: Union[str, Path]) -> Path:
    """
    Create output directory if it doesn't exist.

    Raises
    ------
    OSError
        If directory cannot be created due to permissions or other issues
    """
    path = Path(output_dir)

    try:
        path.mkdir(parents=True, exist_ok=True)
        logger.debug(f"Created/verified output directory: {path}")
        return path
    except OSError as e:
        logger.error(f"Failed to create directory {path}: {e}")
        raise


def open_text(path: Union[str, Path]) -> IO[str]:
    """Open a plain or gzip-compressed text file for reading."""
    path = Path(path)
    if path.suffix == ".gz":
        return gzip.open(path, "rt", encoding="utf-8")
    return open(path, "r", encoding="utf-8")


@contextmanager
def atomic_output(path: Union[str, Path]) -> Iterator[Path]:
    """
    Yield a temporary path that replaces `path` only if the block succeeds.

    The temporary file lives next to the destination so the final rename
    stays on one filesystem. On any exception the temporary file is removed
    and the destination is left untouched.

    Examples
    --------
    >>> with atomic_output("out/taxonkit_input.tsv") as tmp:
    ...     tmp.write_text("kingdom\\tphylum\\n")
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        dir=path.parent, prefix=f".{path.name}.", suffix=".tmp"
    )
    os.close(fd)
    tmp_path = Path(tmp_name)
    try:
        yield tmp_path
        os.replace(tmp_path, path)
    except BaseException:
        if tmp_path.exists():
            tmp_path.unlink()
        raise


def split_list(value: Optional[str]) -> List[str]:
    """Split a comma-separated option into trimmed, non-empty items."""
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


# ============================================================================
# TSV Streaming
# ============================================================================

def read_tsv_header(tsv_path: Union[str, Path]) -> List[str]:
    """
    Return the column names of a TSV file.

    Raises
    ------
    FileNotFoundError
        If the file doesn't exist
    InputFormatError
        If the file is empty
    """
    path = Path(tsv_path)
    if not path.exists():
        raise FileNotFoundError(f"TSV file not found: {path}")
    try:
        header = pd.read_csv(
            path, sep="\t", nrows=0, dtype=str, quoting=csv.QUOTE_NONE
        )
    except pd.errors.EmptyDataError:
        raise InputFormatError(f"Input TSV is empty: {path}")
    return [str(col) for col in header.columns]


def validate_required_columns(
    columns: List[str],
    required_columns: List[str],
    source: Union[str, Path] = "input",
) -> None:
    """
    Check that all required columns are present.

    Raises
    ------
    InputFormatError
        If any required columns are missing; the message lists all of them
    """
    missing = [col for col in required_columns if col not in columns]
    if missing:
        logger.error(
            f"Missing required columns in {source}: {missing}\n"
            f"Available columns: {sorted(columns)[:20]}..."
        )
        raise InputFormatError(
            f"{source} is missing required columns: {missing}. "
            f"Found {len(columns)} columns total."
        )


def iter_tsv_chunks(
    tsv_path: Union[str, Path],
    required_columns: List[str],
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> Iterator[pd.DataFrame]:
    """
    Stream a TSV file as string-typed DataFrame chunks.

    Every value is read as text with NA detection disabled, so placeholder
    strings like "None" or "NA" reach the curation rules unchanged. Missing
    trailing fields come back as "". One empty field past the header (a
    trailing tab) is tolerated; any non-empty extra field is an error. The
    DataFrame index holds the 1-based line number of each row in the file
    (the header is line 1).

    Parameters
    ----------
    tsv_path : Union[str, Path]
        Path to a tab-separated file with a header row
    required_columns : List[str]
        Columns that must be present in the header
    chunk_size : int, optional
        Rows per chunk (default: 100,000)

    Yields
    ------
    pd.DataFrame
        Next chunk of rows

    Raises
    ------
    InputFormatError
        Empty file, missing columns, a row with more fields than the header
        or a row that cannot be parsed
    """
    path = Path(tsv_path)
    columns = read_tsv_header(path)
    validate_required_columns(columns, required_columns, source=path)

    reader = pd.read_csv(
        path,
        sep="\t",
        header=0,
        names=columns + [_OVERFLOW_COLUMN],
        index_col=False,
        dtype=str,
        keep_default_na=False,
        na_filter=False,
        quoting=csv.QUOTE_NONE,
        chunksize=chunk_size,
    )
    offset = 2
    try:
        for chunk in reader:
            chunk = chunk.fillna("")
            chunk.index = range(offset, offset + len(chunk))
            offset += len(chunk)
            overflow = chunk.pop(_OVERFLOW_COLUMN)
            extra = overflow[overflow != ""]
            if not extra.empty:
                line = extra.index[0]
                raise InputFormatError(
                    f"{path} line {line}: more fields than the {len(columns)} "
                    f"header columns (extra value {extra.iloc[0]!r})"
                )
            yield chunk
    except pd.errors.ParserError as e:
        raise InputFormatError(f"Could not parse {path}: {e}") from e
    finally:
        reader.close()


# ============================================================================
# FASTA Streaming
# ============================================================================

def iter_fasta(fasta_path: Union[str, Path]) -> Iterator[Tuple[str, str]]:
    """
    Stream (record id, sequence) pairs from a FASTA file.

    The record id is the first whitespace-delimited word of the header;
    sequences are returned exactly as stored (no case folding), so that
    byte-identical barcodes produce identical digests.

    Raises
    ------
    FileNotFoundError
        If the FASTA file doesn't exist
    """
    path = Path(fasta_path)
    if not path.exists():
        raise FileNotFoundError(f"FASTA file not found: {path}")

    with open_text(path) as handle:
        for record in SeqIO.parse(handle, "fasta"):
            yield record.id, str(record.seq)


def write_fasta_record(handle: IO[str], header: str, sequence: str) -> None:
    """Write one unwrapped FASTA record."""
    handle.write(f">{header}\n{sequence}\n")


# ============================================================================
# Hash and Arithmetic Helpers
# ============================================================================

def sequence_digest(sequence: str) -> bytes:
    """MD5 digest of the sequence bytes; identical barcodes share a digest."""
    return hashlib.md5(sequence.encode("utf-8")).digest()


def label_hash_byte(label: str) -> int:
    """First byte (0-255) of the MD5 digest of a label."""
    return hashlib.md5(label.encode("utf-8")).digest()[0]


def ceil_div(a: int, b: int) -> int:
    """
    Integer ceiling of a / b; 0 when either operand is non-positive.

    Examples
    --------
    >>> ceil_div(20, 10)
    2
    >>> ceil_div(8, 20)
    1
    >>> ceil_div(0, 5)
    0
    """
    if a <= 0 or b <= 0:
        return 0
    return (a + b - 1) // b
