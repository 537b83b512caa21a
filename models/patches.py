"""Typed create/update inputs, validated at the facade boundary."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Mapping, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic import ValidationError as PydanticValidationError

from core.errors import ValidationError
from core.priorities import (
    DEFAULT_PRIORITY,
    DEFAULT_STATUS,
    PRIORITIES,
    STATUSES,
    normalize_priority,
    normalize_status,
)
from models.folder import DEFAULT_ICON


class _Input(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    def changes(self) -> Dict[str, Any]:
        """Only the fields the caller actually supplied."""
        return self.model_dump(exclude_unset=True)


def _required_text(value: Optional[str], label: str) -> str:
    if value is None or not str(value).strip():
        raise ValueError(f"{label} is required")
    return str(value).strip()


def _status(value: Optional[str]) -> str:
    normalized = normalize_status(value)
    if normalized is None:
        raise ValueError(f"status must be one of {', '.join(STATUSES)}")
    return normalized


def _priority(value: Optional[str]) -> str:
    normalized = normalize_priority(value)
    if normalized is None:
        raise ValueError(f"priority must be one of {', '.join(PRIORITIES)}")
    return normalized


class TaskDraft(_Input):
    title: str
    folder_id: str
    description: str = ""
    status: str = DEFAULT_STATUS
    priority: str = DEFAULT_PRIORITY
    due_date: Optional[datetime] = None
    meta: Dict[str, Any] = {}

    @field_validator("title")
    @classmethod
    def _title(cls, value):
        return _required_text(value, "title")

    @field_validator("folder_id")
    @classmethod
    def _folder(cls, value):
        return _required_text(value, "folder")

    @field_validator("status", mode="before")
    @classmethod
    def _status(cls, value):
        return _status(value)

    @field_validator("priority", mode="before")
    @classmethod
    def _priority(cls, value):
        return _priority(value)

    @field_validator("description", mode="before")
    @classmethod
    def _description(cls, value):
        return value or ""


class TaskPatch(_Input):
    title: Optional[str] = None
    folder_id: Optional[str] = None
    description: Optional[str] = None
    status: Optional[str] = None
    priority: Optional[str] = None
    due_date: Optional[datetime] = None

    @field_validator("title")
    @classmethod
    def _title(cls, value):
        return _required_text(value, "title")

    @field_validator("folder_id")
    @classmethod
    def _folder(cls, value):
        return _required_text(value, "folder")

    @field_validator("status", mode="before")
    @classmethod
    def _status(cls, value):
        return _status(value)

    @field_validator("priority", mode="before")
    @classmethod
    def _priority(cls, value):
        return _priority(value)

    @field_validator("description", mode="before")
    @classmethod
    def _description(cls, value):
        return value or ""


class FolderDraft(_Input):
    name: str
    icon: str = DEFAULT_ICON

    @field_validator("name")
    @classmethod
    def _name(cls, value):
        return _required_text(value, "folder name")

    @field_validator("icon", mode="before")
    @classmethod
    def _icon(cls, value):
        return value or DEFAULT_ICON


class FolderPatch(_Input):
    name: Optional[str] = None
    icon: Optional[str] = None

    @field_validator("name")
    @classmethod
    def _name(cls, value):
        return _required_text(value, "folder name")

    @field_validator("icon", mode="before")
    @classmethod
    def _icon(cls, value):
        return value or DEFAULT_ICON


InputT = TypeVar("InputT", bound=_Input)


def parse_input(model: Type[InputT], data: Mapping[str, Any] | InputT) -> InputT:
    """Validate ``data`` against ``model``; raise the engine's ``ValidationError``."""

    if isinstance(data, model):
        return data
    if not isinstance(data, Mapping):
        raise ValidationError(f"{model.__name__} expects a mapping, got {type(data).__name__}")
    try:
        return model.model_validate(dict(data))
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        where = ".".join(str(part) for part in first.get("loc", ())) or model.__name__
        raise ValidationError(f"{where}: {first.get('msg', 'invalid value')}") from exc


__all__ = [
    "FolderDraft",
    "FolderPatch",
    "TaskDraft",
    "TaskPatch",
    "parse_input",
]
