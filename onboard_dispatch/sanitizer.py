"""Removal of unresolved form-template placeholders from request payloads.

Ticket forms substitute ``@FieldName`` tokens with the requester's answers.
Fields left blank keep the raw token, so the payload is cleaned before
validation to make them look missing instead of like literal strings.
"""
from __future__ import annotations

from typing import Any, Dict, Optional, Set

PLACEHOLDER_PREFIX = "@"


def is_placeholder(value: Any) -> bool:
    return isinstance(value, str) and value.strip().startswith(PLACEHOLDER_PREFIX)


def sanitize(node: Any, visited: Optional[Set[int]] = None) -> Any:
    """Return a cleaned copy of ``node`` or ``None`` if nothing meaningful remains.

    * placeholder strings become ``None``
    * mappings drop properties that clean to ``None`` or to an empty mapping,
      and collapse to ``None`` when no property survives
    * a list holding a single placeholder becomes ``[]``; other lists drop
      elements that clean to ``None`` and collapse to ``None`` when a non-empty
      list loses every element

    ``visited`` holds the ids of the containers on the current path; a
    container seen again (a cycle) cleans to ``None``. The input is never
    modified.
    """

    if visited is None:
        visited = set()

    if isinstance(node, str):
        return None if is_placeholder(node) else node

    if isinstance(node, dict):
        marker = id(node)
        if marker in visited:
            return None
        visited.add(marker)
        try:
            cleaned: Dict[Any, Any] = {}
            for key, value in node.items():
                result = sanitize(value, visited)
                if result is None or (isinstance(result, dict) and not result):
                    continue
                cleaned[key] = result
        finally:
            visited.discard(marker)
        return cleaned or None

    if isinstance(node, (list, tuple)):
        marker = id(node)
        if marker in visited:
            return None
        if not node:
            return []
        if len(node) == 1 and is_placeholder(node[0]):
            return []
        visited.add(marker)
        try:
            items = [sanitize(item, visited) for item in node]
        finally:
            visited.discard(marker)
        kept = [item for item in items if item is not None]
        return kept or None

    return node


def sanitize_payload(payload: Any) -> Dict[str, Any]:
    """Sanitize a decoded request body; a body that cleans away entirely becomes ``{}``."""

    result = sanitize(payload)
    if isinstance(result, dict):
        return result
    return {}


__all__ = ["PLACEHOLDER_PREFIX", "is_placeholder", "sanitize", "sanitize_payload"]
