from __future__ import annotations

import re

_MISSING_COLUMN = re.compile(r"Could not find the '([^']+)' column of '([^']+)'", re.IGNORECASE)
_NOT_NULL = re.compile(r'null value in column "([^"]+)" of relation "([^"]+)"', re.IGNORECASE)
_MISSING_RELATION = re.compile(r'relation "([^"]+)" does not exist', re.IGNORECASE)


def describe_schema_error(message: str | None) -> str | None:
    """Readable one-liner for a remote schema complaint, or None when the text is not one."""
    if not message:
        return None
    match = _MISSING_COLUMN.search(message)
    if match:
        return f"Missing column: {match.group(1)} in table {match.group(2)}"
    match = _NOT_NULL.search(message)
    if match:
        return f"Not-null constraint violated: {match.group(1)} in table {match.group(2)}"
    match = _MISSING_RELATION.search(message)
    if match:
        return f"Missing table: {match.group(1)}"
    return None


def is_schema_error(message: str | None) -> bool:
    return describe_schema_error(message) is not None
