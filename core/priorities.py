"""Task priority and status vocabularies."""
from __future__ import annotations

from typing import Dict, Optional

PRIORITIES = ("low", "medium", "high")
DEFAULT_PRIORITY = "low"

STATUSES = ("pending", "in-progress", "completed")
DEFAULT_STATUS = "pending"

# Remote spellings of the statuses.
STATUS_TO_REMOTE: Dict[str, str] = {
    "pending": "Pending",
    "in-progress": "In Progress",
    "completed": "Completed",
}

_STATUS_ALIASES: Dict[str, str] = {
    "pending": "pending",
    "todo": "pending",
    "in-progress": "in-progress",
    "in progress": "in-progress",
    "in_progress": "in-progress",
    "inprogress": "in-progress",
    "doing": "in-progress",
    "completed": "completed",
    "complete": "completed",
    "done": "completed",
}


def normalize_priority(value: Optional[str]) -> Optional[str]:
    """Return the canonical priority name or ``None`` when ``value`` is unknown."""
    if value is None:
        return None
    lowered = str(value).strip().lower()
    return lowered if lowered in PRIORITIES else None


def normalize_status(value: Optional[str]) -> Optional[str]:
    """Map local and remote spellings onto ``STATUSES``; ``None`` when unknown."""
    if value is None:
        return None
    return _STATUS_ALIASES.get(str(value).strip().lower())


def toggled_status(current: str) -> str:
    return "pending" if current == "completed" else "completed"


__all__ = [
    "PRIORITIES",
    "DEFAULT_PRIORITY",
    "STATUSES",
    "DEFAULT_STATUS",
    "STATUS_TO_REMOTE",
    "normalize_priority",
    "normalize_status",
    "toggled_status",
]
