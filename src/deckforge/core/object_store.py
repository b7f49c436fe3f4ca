"""Content-addressed file storage for uploaded sources."""

import hashlib
import logging
import shutil
from pathlib import Path

from .errors import NotFoundError

logger = logging.getLogger(__name__)


def calculate_sha256(file_path: Path) -> str:
    """Calculate SHA256 hash of a file."""
    sha256_hash = hashlib.sha256()
    with open(file_path, "rb") as f:
        for block in iter(lambda: f.read(4096), b""):
            sha256_hash.update(block)
    return sha256_hash.hexdigest()


def object_name(sha256: str, suffix: str) -> str:
    return f"{sha256}{suffix.lower()}"


def save_to_object_store(file_path: Path, object_store_dir: Path) -> str:
    """
    Copy a file into the object store under its SHA256.

    Returns:
        The object name (relative to ``object_store_dir``), used as Source.file_path
    """
    object_store_dir.mkdir(parents=True, exist_ok=True)
    name = object_name(calculate_sha256(file_path), file_path.suffix)
    dest_path = object_store_dir / name

    if not dest_path.exists():
        shutil.copy2(file_path, dest_path)
        logger.info(f"Saved {file_path.name} to object store: {dest_path}")
    else:
        logger.info(f"Object already exists in store: {dest_path}")

    return name


def load_object(object_store_dir: Path, name: str) -> bytes:
    """Read an object; names may not escape the store directory."""
    root = object_store_dir.resolve()
    path = (root / name).resolve()
    if root not in path.parents or not path.is_file():
        raise NotFoundError("file", name)
    return path.read_bytes()
