"""
Project identity and the per-project record.

The project id is derived from the absolute path alone, so two processes
pointed at the same checkout resolve to the same store partition.
"""

import hashlib
import json
import uuid
from pathlib import Path
from typing import Optional, Sequence, Union

from pydantic import ValidationError

from memory_engineering.shared.errors import ConfigurationMissing
from memory_engineering.shared.models import ProjectRecord
from memory_engineering.shared.observability import get_logger

logger = get_logger(__name__)

PROJECT_DIR_NAME = ".memory-engineering"
RECORD_FILENAME = "config.json"

PROJECT_MARKERS: Sequence[str] = (
    f"{PROJECT_DIR_NAME}/{RECORD_FILENAME}",
    "pyproject.toml",
    "package.json",
    "go.mod",
    "Cargo.toml",
    "requirements.txt",
    "Gemfile",
    ".git",
)

PathLike = Union[str, Path]


def generate_project_id(project_path: PathLike) -> str:
    """MD5 of the absolute path, rendered in UUID form."""
    absolute = str(Path(project_path).expanduser().resolve())
    digest = hashlib.md5(absolute.encode("utf-8")).hexdigest()
    return str(uuid.UUID(digest))


def find_project_root(start: Optional[PathLike] = None) -> Path:
    """Walk up from ``start`` until a marker file is found; fall back to ``start``."""
    start_path = Path(start or Path.cwd()).expanduser().resolve()
    for candidate in (start_path, *start_path.parents):
        for marker in PROJECT_MARKERS:
            if (candidate / marker).exists():
                logger.debug("Project root found", root=str(candidate), marker=marker)
                return candidate
    logger.debug("No project markers found", start=str(start_path))
    return start_path


def record_path(project_root: PathLike, dir_name: str = PROJECT_DIR_NAME) -> Path:
    return Path(project_root) / dir_name / RECORD_FILENAME


def load_project_record(
    project_root: PathLike, dir_name: str = PROJECT_DIR_NAME
) -> ProjectRecord:
    path = record_path(project_root, dir_name)
    if not path.exists():
        raise ConfigurationMissing(
            f"Project at {project_root} is not initialized ({path} is missing)."
        )
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        return ProjectRecord.model_validate(data)
    except (json.JSONDecodeError, ValidationError) as exc:
        raise ConfigurationMissing(
            f"Project record {path} is unreadable: {exc}",
            remediation=(
                "Delete the file and run initialize_project again; memories stay "
                "in the store because the project id is derived from the path."
            ),
        ) from exc


def save_project_record(
    project_root: PathLike, record: ProjectRecord, dir_name: str = PROJECT_DIR_NAME
) -> Path:
    path = record_path(project_root, dir_name)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        record.model_dump_json(by_alias=True, indent=2, exclude_none=True),
        encoding="utf-8",
    )
    logger.info("Project record written", path=str(path), project_id=record.project_id)
    return path


def ensure_project_record(
    project_root: PathLike,
    display_name: Optional[str] = None,
    dir_name: str = PROJECT_DIR_NAME,
) -> ProjectRecord:
    """Return the existing record, or create one with a deterministic id."""
    root = Path(project_root).expanduser().resolve()
    try:
        return load_project_record(root, dir_name)
    except ConfigurationMissing:
        if record_path(root, dir_name).exists():
            raise
    record = ProjectRecord(
        project_id=generate_project_id(root),
        display_name=display_name or root.name,
        project_path=str(root),
    )
    save_project_record(root, record, dir_name)
    return record
