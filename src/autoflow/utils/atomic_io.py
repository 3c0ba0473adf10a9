"""Crash-safe file writes for config scaffolding and workflow exports."""

import logging
import os
from pathlib import Path

logger = logging.getLogger(__name__)


def atomic_write_text(
    file_path: Path,
    content: str,
    *,
    make_parents: bool = False,
    max_retries: int = 3,
) -> Path:
    """
    Write ``content`` through a sibling temp file and ``os.replace``.

    Readers, including the config loader's mtime cache, only ever see the old
    file or the complete new one.

    Returns:
        The path written

    Raises:
        OSError: If the write still fails after ``max_retries`` attempts
    """
    file_path = Path(file_path)
    if make_parents:
        file_path.parent.mkdir(parents=True, exist_ok=True)
    tmp_file = file_path.parent / f".{file_path.name}.{os.getpid()}.tmp"

    max_retries = max(1, max_retries)
    for attempt in range(1, max_retries + 1):
        try:
            tmp_file.write_text(content)
            os.replace(tmp_file, file_path)
            return file_path
        except OSError as e:
            tmp_file.unlink(missing_ok=True)
            if attempt == max_retries:
                logger.error(f"Giving up on {file_path} after {max_retries} attempts: {e}")
                raise
            logger.warning(f"Write to {file_path} failed (attempt {attempt}/{max_retries}): {e}")
