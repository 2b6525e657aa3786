"""Concrete record types: journal entries, projects and todos."""

from typing import Any

from .base import PayloadField, RecordType, RecordValidationError, check_text

DEFAULT_PROJECT_ID = "default"


def _validate_progress(value: int) -> int:
    if not 0 <= value <= 100:
        raise RecordValidationError("progress must be between 0 and 100")
    return value


def _validate_tasks(tasks: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Normalize project tasks to {id, text, done} objects."""
    normalized = []
    for task in tasks:
        task_id = task.get("id")
        text = task.get("text", "")
        done = task.get("done", False)
        if not isinstance(task_id, str) or not task_id:
            raise RecordValidationError("task id must be a non-empty string")
        if not isinstance(text, str):
            raise RecordValidationError("task text must be a string")
        check_text("task id", task_id)
        check_text("task text", text)
        if not isinstance(done, bool):
            raise RecordValidationError("task done must be a boolean")
        normalized.append({"id": task_id, "text": text, "done": done})
    return normalized


JOURNAL = RecordType(
    name="journal",
    table="journal_entries",
    fields=(
        PayloadField("title", "title", "str", required=True),
        PayloadField("content", "content", "str", required=True),
    ),
)

PROJECT = RecordType(
    name="project",
    table="projects",
    fields=(
        PayloadField("name", "name", "str", required=True),
        PayloadField("description", "description", "str", default=""),
        PayloadField(
            "progress", "progress", "int", default=0, validator=_validate_progress
        ),
        PayloadField("tasks", "tasks", "list", default=(), validator=_validate_tasks),
    ),
)

TODO = RecordType(
    name="todo",
    table="todos",
    fields=(
        PayloadField("text", "text", "str", required=True),
        PayloadField("done", "done", "bool", default=False),
        PayloadField("projectId", "project_id", "str", default=DEFAULT_PROJECT_ID),
        # Completion time is metadata about the edit, not content
        PayloadField("completedAt", "completed_at", "timestamp", checksummed=False),
    ),
    local_indexes=("project_id", "done"),
)

RECORD_TYPES: dict[str, RecordType] = {
    rt.name: rt for rt in (JOURNAL, PROJECT, TODO)
}


def get_record_type(name: str) -> RecordType:
    """Look up a record type by name.

    Raises:
        KeyError: If no such record type exists.
    """
    try:
        return RECORD_TYPES[name]
    except KeyError:
        raise KeyError(
            f"Unknown record type: {name} (expected one of {', '.join(RECORD_TYPES)})"
        ) from None
