"""
Migration of shift-report ``employees`` columns that were stored with one or
more extra layers of JSON encoding.

Every row goes through a strict parse-and-validate pass. Rows that cannot be
turned into a list of ``{name, hours}`` objects are collected in a dead-letter
list instead of being guessed at.
"""

import json
import logging
from typing import Any

from pydantic import Field, TypeAdapter, ValidationError

from valet.models import CamelModel, EmployeeHours

logger = logging.getLogger(__name__)

MAX_DECODE_DEPTH = 5

_employees_adapter = TypeAdapter(list[EmployeeHours])


class RawEmployeesRow(CamelModel):
    id: int
    employees: Any


class DeadLetter(CamelModel):
    id: int
    raw: Any
    reason: str


class RepairResult(CamelModel):
    repaired: dict[int, list[EmployeeHours]] = Field(default_factory=dict)
    unchanged: list[int] = Field(default_factory=list)
    dead_letter: list[DeadLetter] = Field(default_factory=list)


def _loads(text: str) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        # comma-joined quoted objects without the enclosing brackets
        return json.loads(f"[{text}]")


def _unwrap(value: Any, depth: int = 0) -> Any:
    if depth > MAX_DECODE_DEPTH:
        raise ValueError("too many layers of encoding")
    if isinstance(value, str):
        return _unwrap(_loads(value), depth + 1)
    if isinstance(value, dict):
        return [value]
    if isinstance(value, list):
        items = []
        for item in value:
            unwrapped = _unwrap(item, depth + 1) if isinstance(item, str) else item
            if isinstance(unwrapped, list):
                items.extend(unwrapped)
            else:
                items.append(unwrapped)
        return items
    raise ValueError(f"unexpected {type(value).__name__} value")


def parse_employees(raw: Any) -> list[EmployeeHours]:
    """Raises ValueError when the value cannot be recovered."""
    if raw is None or raw == "":
        return []
    try:
        return _employees_adapter.validate_python(_unwrap(raw))
    except (json.JSONDecodeError, ValidationError) as exc:
        raise ValueError(str(exc)) from exc


def _is_clean(raw: Any) -> bool:
    if isinstance(raw, list):
        candidate = raw
    elif isinstance(raw, str):
        try:
            candidate = json.loads(raw)
        except json.JSONDecodeError:
            return False
    else:
        return False
    try:
        _employees_adapter.validate_python(candidate, strict=False)
    except ValidationError:
        return False
    return all(isinstance(item, dict) for item in candidate)


def repair_rows(rows: list[RawEmployeesRow]) -> RepairResult:
    result = RepairResult()
    for row in rows:
        if _is_clean(row.employees):
            result.unchanged.append(row.id)
            continue
        try:
            result.repaired[row.id] = parse_employees(row.employees)
        except ValueError as exc:
            logger.warning("dead-lettering shift report %s: %s", row.id, exc)
            result.dead_letter.append(
                DeadLetter(id=row.id, raw=row.employees, reason=str(exc))
            )
    logger.info(
        "employee repair: %d repaired, %d unchanged, %d dead-lettered",
        len(result.repaired),
        len(result.unchanged),
        len(result.dead_letter),
    )
    return result
