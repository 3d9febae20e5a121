from __future__ import annotations

from typing import Any

from auditkpi.domain.events import (
    CHANGE_CREATED,
    CHANGE_DELETED,
    CHANGE_STATUS,
    CHANGE_UPDATED,
    OPERATION_CREATE,
    OPERATION_DELETE,
    STATUS_CANCELLED,
    STATUS_COMPLETED,
)


_ENTITY_TABLES = {
    "appointments": "Appointments",
    "chat_messages": "ChatMessages",
    "users": "User",
    "companies": "Company",
}

_BASE_IMPACT = 10
_MAX_IMPACT = 100
_CHANGE_IMPACT = {CHANGE_CREATED: 20, CHANGE_DELETED: 30, CHANGE_STATUS: 25}
# Entity-specific bonuses for high-impact terminal states.
_STATUS_IMPACT = {"appointments": {STATUS_COMPLETED: 15, STATUS_CANCELLED: 20}}


def entity_table(entity_type: str) -> str:
    return _ENTITY_TABLES.get(entity_type, entity_type)


def changed_fields(before: dict[str, Any] | None, after: dict[str, Any] | None) -> list[str]:
    if before is None:
        return list((after or {}).keys())
    current = after or {}
    keys = list(dict.fromkeys([*before.keys(), *current.keys()]))
    return [key for key in keys if before.get(key) != current.get(key)]


def diff_states(before: dict[str, Any] | None, after: dict[str, Any] | None) -> dict[str, dict[str, Any]]:
    """Map each changed field to its ``{"from": ..., "to": ...}`` pair."""
    previous = before or {}
    current = after or {}
    return {
        key: {"from": previous.get(key), "to": current.get(key)}
        for key in changed_fields(before, after)
    }


def infer_change_kind(operation: str, before: dict[str, Any] | None, after: dict[str, Any] | None) -> str:
    if operation == OPERATION_CREATE:
        return CHANGE_CREATED
    if operation == OPERATION_DELETE:
        return CHANGE_DELETED
    if (before or {}).get("status") != (after or {}).get("status"):
        return CHANGE_STATUS
    return CHANGE_UPDATED


def impact_score(entity_type: str, change_kind: str, after: dict[str, Any] | None) -> int:
    score = _BASE_IMPACT + _CHANGE_IMPACT.get(change_kind, 0)
    status = (after or {}).get("status")
    score += _STATUS_IMPACT.get(entity_type, {}).get(status, 0)
    return min(score, _MAX_IMPACT)
