"""``{{name}}`` placeholder substitution for URLs, headers and bodies.

Placeholders are replaced from a caller-supplied value map. A placeholder
with no value is left in the output verbatim and reported in
:attr:`~handshake_engine.models.SubstitutionResult.unresolved`; it is never
silently dropped.

Names starting with ``$`` are built-ins computed at substitution time:

- ``{{$timestamp}}`` -- ISO-8601 UTC timestamp
- ``{{$unix_timestamp}}`` -- seconds since the epoch
- ``{{$date}}`` / ``{{$time}}`` -- ``YYYY-MM-DD`` / ``HH:MM:SS`` (UTC)
- ``{{$uuid}}`` -- random UUID4
- ``{{$random}}`` -- 32 random hex characters

Caller values take precedence over built-ins.
"""

from __future__ import annotations

import re
import secrets
import uuid
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any, Optional

from handshake_engine.models import SubstitutionResult, utc_now

PLACEHOLDER_RE = re.compile(r"\{\{\s*(\$?[A-Za-z_][A-Za-z0-9_.\-]*)\s*\}\}")


def _builtin(name: str, clock: Callable[[], datetime]) -> Optional[str]:
    if name == "$timestamp":
        return clock().isoformat()
    if name == "$unix_timestamp":
        return str(int(clock().timestamp()))
    if name == "$date":
        return clock().strftime("%Y-%m-%d")
    if name == "$time":
        return clock().strftime("%H:%M:%S")
    if name == "$uuid":
        return str(uuid.uuid4())
    if name == "$random":
        return secrets.token_hex(16)
    return None


def find_placeholders(template: str) -> list[str]:
    """Return the distinct placeholder names in *template*, in order of appearance."""
    seen: list[str] = []
    for match in PLACEHOLDER_RE.finditer(template):
        if match.group(1) not in seen:
            seen.append(match.group(1))
    return seen


def substitute(
    template: str,
    values: Mapping[str, Any],
    clock: Callable[[], datetime] = utc_now,
) -> SubstitutionResult:
    """Replace every ``{{name}}`` in *template* with ``values[name]``.

    Args:
        template: Text containing placeholders.
        values: Placeholder values. Non-string values are converted with
            ``str()``.
        clock: Time source for the date/time built-ins.

    Returns:
        A :class:`~handshake_engine.models.SubstitutionResult` with the
        output, the names that were replaced and the names left unresolved.

    Example::

        >>> substitute("https://api.x.com/{{id}}", {"id": "42"}).output
        'https://api.x.com/42'
        >>> substitute("https://api.x.com/{{id}}", {}).unresolved
        ['id']
    """
    replaced: list[str] = []
    unresolved: list[str] = []

    def _replace(match: re.Match[str]) -> str:
        name = match.group(1)
        if name in values and values[name] is not None:
            value: Optional[str] = str(values[name])
        elif name.startswith("$"):
            value = _builtin(name, clock)
        else:
            value = None
        if value is None:
            if name not in unresolved:
                unresolved.append(name)
            return match.group(0)
        if name not in replaced:
            replaced.append(name)
        return value

    output = PLACEHOLDER_RE.sub(_replace, template)
    return SubstitutionResult(output=output, replaced=replaced, unresolved=unresolved)


def substitute_mapping(
    data: Mapping[str, str],
    values: Mapping[str, Any],
    clock: Callable[[], datetime] = utc_now,
) -> tuple[dict[str, str], list[str]]:
    """Substitute placeholders in every value of a string mapping.

    Returns:
        The substituted mapping and the unresolved names across all values.
    """
    result: dict[str, str] = {}
    unresolved: list[str] = []
    for key, value in data.items():
        sub = substitute(str(value), values, clock)
        result[key] = sub.output
        unresolved.extend(n for n in sub.unresolved if n not in unresolved)
    return result, unresolved
