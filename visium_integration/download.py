"""
Fetch-and-cache helpers for per-sample count matrices.

Archives are downloaded once into a cache directory and extracted beside
it. Later runs reuse the cached files.
"""

import logging
import os
import shutil
import tarfile
import time
import urllib.error
import urllib.request
from pathlib import Path
from typing import Optional

from .errors import DownloadError, MissingInputError

logger = logging.getLogger(__name__)

MATRIX_FILES = ("matrix.mtx.gz", "matrix.mtx")


def fetch(
    url: str,
    dest_dir,
    filename: Optional[str] = None,
    retries: int = 3,
    backoff: float = 1.0,
) -> Path:
    """
    Download ``url`` into ``dest_dir`` unless it is already cached.

    Parameters
    ----------
    url : str
        Source URL (``http(s)://`` or ``file://``).
    dest_dir : str or Path
        Cache directory; created if needed.
    filename : str, optional
        Name of the cached file. Defaults to the last component of the URL.
    retries : int
        Number of attempts before giving up.
    backoff : float
        Base delay in seconds; doubled after each failed attempt.

    Returns
    -------
    Path
        Path to the cached file.

    Raises
    ------
    DownloadError
        If every attempt fails.
    """
    dest_dir = Path(dest_dir)
    dest_dir.mkdir(parents=True, exist_ok=True)
    if filename is None:
        filename = url.rstrip("/").rsplit("/", 1)[-1]
    target = dest_dir / filename

    if target.exists():
        logger.debug("Using cached file: %s", target)
        return target

    partial = target.with_name(target.name + ".part")
    delay = backoff
    for attempt in range(1, retries + 1):
        try:
            logger.info("Downloading %s (attempt %d/%d)", url, attempt, retries)
            urllib.request.urlretrieve(url, partial)
            os.replace(partial, target)
            logger.info("Saved %s", target)
            return target
        except (urllib.error.URLError, OSError) as e:
            if partial.exists():
                partial.unlink()
            if attempt == retries:
                raise DownloadError(
                    f"Failed to download {url} after {retries} attempts: {e}"
                ) from e
            logger.warning("Download of %s failed (%s); retrying in %.1fs", url, e, delay)
            time.sleep(delay)
            delay *= 2

    # Only reached when retries < 1
    raise DownloadError(f"No download attempts made for {url} (retries={retries})")


def _is_within(base: Path, member_name: str) -> bool:
    target = (base / member_name).resolve()
    try:
        target.relative_to(base.resolve())
    except ValueError:
        return False
    return True


def find_matrix_dir(root) -> Path:
    """Return the first directory under ``root`` that holds a matrix file."""
    root = Path(root)
    for name in MATRIX_FILES:
        if (root / name).is_file():
            return root
    for name in MATRIX_FILES:
        hits = sorted(root.rglob(name))
        if hits:
            return hits[0].parent
    raise MissingInputError(f"No matrix.mtx[.gz] found under {root}")


def extract_archive(archive, dest_dir=None) -> Path:
    """
    Extract a tar archive holding a 10x matrix triple.

    Members whose paths would land outside ``dest_dir`` are skipped.
    Extraction is skipped when ``dest_dir`` already exists.

    Returns
    -------
    Path
        Directory containing ``matrix.mtx[.gz]``.
    """
    archive = Path(archive)
    if not archive.is_file():
        raise MissingInputError(f"Archive not found: {archive}")
    if dest_dir is None:
        stem = archive.name
        for ext in (".tar.gz", ".tgz", ".tar"):
            if stem.endswith(ext):
                stem = stem[: -len(ext)]
                break
        dest_dir = archive.with_name(stem)
    dest_dir = Path(dest_dir)

    if not dest_dir.exists():
        logger.info("Extracting %s to %s", archive, dest_dir)
        dest_dir.mkdir(parents=True)
        try:
            with tarfile.open(archive, "r:*") as tar:
                members = [m for m in tar.getmembers() if _is_within(dest_dir, m.name)]
                skipped = len(tar.getmembers()) - len(members)
                if skipped:
                    logger.warning("Skipped %d unsafe archive members", skipped)
                tar.extractall(path=dest_dir, members=members)
        except tarfile.TarError as e:
            shutil.rmtree(dest_dir, ignore_errors=True)
            raise MissingInputError(f"Unreadable archive {archive}: {e}") from e
    else:
        logger.debug("Using extracted directory: %s", dest_dir)

    return find_matrix_dir(dest_dir)


def fetch_sample(url: str, cache_dir, sample_id: str, retries: int = 3) -> Path:
    """Download and unpack one sample's matrix archive; return the matrix directory."""
    filename = f"{sample_id}_{url.rstrip('/').rsplit('/', 1)[-1]}"
    archive = fetch(url, cache_dir, filename=filename, retries=retries)
    return extract_archive(archive, Path(cache_dir) / sample_id)
