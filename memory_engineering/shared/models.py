from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class EngineBaseModel(BaseModel):
    model_config = ConfigDict(
        protected_namespaces=(),  # allow fields like model_id
        arbitrary_types_allowed=True,
    )


class ProjectRecord(BaseModel):
    """Per-project record persisted as .memory-engineering/config.json."""

    model_config = ConfigDict(populate_by_name=True)

    project_id: str = Field(alias="projectId")
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), alias="createdAt"
    )
    display_name: str = Field(alias="displayName")
    project_path: Optional[str] = Field(default=None, alias="projectPath")
