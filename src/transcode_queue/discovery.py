"""Discovery: record new source files as ``unprocessed`` jobs.

Job ids are the file's path relative to the videos root in POSIX form, so
two files with the same name in different folders stay distinct and an id
is never handed to a different file.
"""

import logging
from pathlib import Path
from typing import Iterable, Iterator, List, Optional

from .queue.backends import JobStore
from .queue.errors import StoreConflict
from .queue.models import VideoJob

logger = logging.getLogger(__name__)

DEFAULT_EXTENSIONS = (".mp4",)


def job_id_for(path: Path, root: Path) -> str:
    return path.relative_to(root).as_posix()


def _hidden(path: Path, root: Path) -> bool:
    # Dotfiles and anything under a dot-directory (partial uploads, editor swap)
    return any(part.startswith(".") for part in path.relative_to(root).parts)


def iter_sources(
    root: Path,
    extensions: Optional[Iterable[str]] = None,
    recursive: bool = True,
) -> Iterator[Path]:
    """Yield source files under ``root`` in sorted path order.

    ``root`` may also be a single file. Extensions match case-insensitively,
    with or without the leading dot.
    """
    if not root.exists():
        raise FileNotFoundError(f"Videos root not found: {root}")

    allowed = {
        (e if e.startswith(".") else f".{e}").lower()
        for e in (extensions or DEFAULT_EXTENSIONS)
    }

    if root.is_file():
        if root.suffix.lower() in allowed:
            yield root
        return

    candidates = root.rglob("*") if recursive else root.iterdir()
    matches = [
        p
        for p in candidates
        if p.is_file() and p.suffix.lower() in allowed and not _hidden(p, root)
    ]
    yield from sorted(matches, key=lambda p: p.as_posix())


def discover(
    store: JobStore,
    root: str,
    extensions: Optional[Iterable[str]] = None,
    recursive: bool = True,
) -> List[VideoJob]:
    """Scan ``root`` and create an unprocessed job for every unseen file.

    Args:
        store: Job store to populate
        root: Videos root directory
        extensions: Allowed file extensions (``.mp4`` if None)
        recursive: Whether to descend into sub-directories

    Returns:
        Newly created jobs, in scan order

    Raises:
        FileNotFoundError: If ``root`` does not exist
    """
    root_path = Path(root)
    base = root_path if root_path.is_dir() else root_path.parent
    known = store.known_paths()
    created = []

    for path in iter_sources(root_path, extensions=extensions, recursive=recursive):
        rel = job_id_for(path, base)
        if rel in known:
            continue
        try:
            size = path.stat().st_size
        except OSError as e:
            # File vanished between scan and stat
            logger.warning("Skipping %s: %s", rel, e)
            continue

        try:
            job = store.create(VideoJob(id=rel, path=rel, original_size=size))
        except StoreConflict:
            # A concurrent discovery pass recorded it first
            continue
        created.append(job)

    if created:
        logger.info("Discovered %d new videos under %s", len(created), root_path)
    return created
