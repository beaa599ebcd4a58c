"""Source file discovery and change detection."""

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Sequence, Tuple

from memory_engineering.shared.observability import get_logger
from memory_engineering.store.base import glob_match

logger = get_logger(__name__)


@dataclass(frozen=True)
class SourceFile:
    path: Path
    rel_path: str  # posix, relative to project root
    mtime: float


def _excluded(rel_path: str, excludes: Iterable[str]) -> bool:
    return any(glob_match(rel_path, pattern) for pattern in excludes)


def scan_files(
    root: Path,
    patterns: Sequence[str],
    excludes: Sequence[str] = (),
    *,
    include_tests: bool = False,
    test_excludes: Sequence[str] = (),
) -> List[SourceFile]:
    """Files under ``root`` matching any include pattern and no exclude pattern."""
    root = root.resolve()
    effective_excludes = list(excludes)
    if not include_tests:
        effective_excludes.extend(test_excludes)

    seen: Dict[str, SourceFile] = {}
    for pattern in patterns:
        for path in root.glob(pattern):
            if not path.is_file():
                continue
            rel_path = path.relative_to(root).as_posix()
            if rel_path in seen or _excluded(rel_path, effective_excludes):
                continue
            try:
                mtime = path.stat().st_mtime
            except OSError as exc:
                logger.warning("Cannot stat source file", path=rel_path, error=str(exc))
                continue
            seen[rel_path] = SourceFile(path=path, rel_path=rel_path, mtime=mtime)

    files = sorted(seen.values(), key=lambda f: f.rel_path)
    logger.debug("Scanned source files", root=str(root), count=len(files))
    return files


def select_changed(
    files: Sequence[SourceFile],
    indexed_times: Dict[str, float],
    *,
    force: bool = False,
) -> Tuple[List[SourceFile], List[SourceFile]]:
    """
    Split files into (to_index, unchanged).

    A file is unchanged when its mtime is not newer than the mtime recorded
    with its stored chunks. ``force`` re-indexes everything.
    """
    if force:
        return list(files), []
    changed: List[SourceFile] = []
    unchanged: List[SourceFile] = []
    for source in files:
        previous = indexed_times.get(source.rel_path)
        if previous is not None and source.mtime <= previous:
            unchanged.append(source)
        else:
            changed.append(source)
    return changed, unchanged


def read_source(source: SourceFile) -> str:
    """
    Raises:
        OSError: unreadable file
        UnicodeDecodeError: not UTF-8 text
    """
    return source.path.read_text(encoding="utf-8")
