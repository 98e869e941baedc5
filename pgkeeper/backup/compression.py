"""
Compression and checksum helpers for dump artifacts.

Everything here streams in fixed-size chunks so multi-gigabyte dumps never
have to fit in memory.
"""

import gzip
import hashlib
import logging
import os
import shutil
from typing import Optional

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024
GZIP_LEVEL = 6
GZIP_MAGIC = b'\x1f\x8b'


class CompressionError(Exception):
    """Raised when compressing, decompressing or hashing a file fails."""
    pass


def gzip_file(input_path: str, output_path: Optional[str] = None, level: int = GZIP_LEVEL) -> str:
    """
    Compress a file with gzip.

    Args:
        input_path: File to compress (left in place)
        output_path: Destination (default: input_path + '.gz')
        level: gzip compression level

    Returns:
        Path to the compressed file

    Raises:
        CompressionError: If compression fails; a partial output is removed
    """
    output_path = output_path or f"{input_path}.gz"

    try:
        with open(input_path, 'rb') as src, gzip.open(output_path, 'wb', compresslevel=level) as dst:
            shutil.copyfileobj(src, dst, CHUNK_SIZE)
    except OSError as e:
        _remove_quietly(output_path)
        raise CompressionError(f"Failed to compress {input_path}: {e}")

    logger.debug(f"File compressed: {input_path} -> {output_path}")
    return output_path


def gunzip_file(input_path: str, output_path: str) -> str:
    """
    Decompress a gzip file.

    Raises:
        CompressionError: If the input is missing or not valid gzip data
    """
    try:
        with gzip.open(input_path, 'rb') as src, open(output_path, 'wb') as dst:
            shutil.copyfileobj(src, dst, CHUNK_SIZE)
    except (OSError, EOFError) as e:
        _remove_quietly(output_path)
        raise CompressionError(f"Failed to decompress {input_path}: {e}")

    logger.debug(f"File decompressed: {input_path} -> {output_path}")
    return output_path


def is_gzip_file(path: str) -> bool:
    """Check the gzip magic bytes at the start of a file."""
    try:
        with open(path, 'rb') as f:
            return f.read(2) == GZIP_MAGIC
    except OSError as e:
        raise CompressionError(f"Failed to read {path}: {e}")


def compute_checksum(path: str) -> str:
    """
    Stream a file through SHA-256.

    Returns:
        Lower-case hex digest

    Raises:
        CompressionError: If the file cannot be read
    """
    digest = hashlib.sha256()
    try:
        with open(path, 'rb') as f:
            for chunk in iter(lambda: f.read(CHUNK_SIZE), b''):
                digest.update(chunk)
    except OSError as e:
        raise CompressionError(f"Failed to checksum {path}: {e}")
    return digest.hexdigest()


def get_file_size(path: str) -> int:
    """
    Get the size of a file in bytes.

    Raises:
        CompressionError: If file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(path)
    except FileNotFoundError:
        raise CompressionError(f"Artifact not found: {path}")
    except OSError as e:
        raise CompressionError(f"Failed to get artifact size: {e}")


def _remove_quietly(path: str):
    try:
        if os.path.exists(path):
            os.remove(path)
    except OSError as e:
        logger.warning(f"Failed to remove partial file {path}: {e}")
