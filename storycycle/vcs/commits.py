"""Conventional commit messages for the cycle's git steps."""

from __future__ import annotations

import re
from typing import Optional, Tuple

__all__ = ["format_conventional_commit", "split_commit_template", "story_commit_message"]


_TYPE_PATTERN = re.compile(r"[^a-z0-9]+")
_SCOPE_PATTERN = re.compile(r"[^a-z0-9._/-]+")
_WHITESPACE_PATTERN = re.compile(r"\s+")
_TEMPLATE_PATTERN = re.compile(r"^(?P<type>[a-zA-Z]+)(?:\([^)]*\))?!?:\s*(?P<description>.*)$")

_STORY_COMMIT_TYPES = ("fix", "docs", "feat")
_DEFAULT_DESCRIPTION = "update"


def _sanitize_type(commit_type: str) -> str:
    sanitized = _TYPE_PATTERN.sub("", str(commit_type).strip().lower())
    if not sanitized:
        raise ValueError("commit type must contain alphanumeric characters")
    return sanitized


def _sanitize_scope(scope: Optional[str]) -> Optional[str]:
    normalized = str(scope or "").strip().lower()
    if not normalized:
        return None
    sanitized = _SCOPE_PATTERN.sub("-", normalized).strip("-")
    return sanitized or None


def _sanitize_description(description: str) -> str:
    collapsed = _WHITESPACE_PATTERN.sub(" ", (description or "").strip())
    if not collapsed:
        raise ValueError("commit description must not be empty")
    if collapsed.endswith((".", "!")):
        collapsed = collapsed[:-1]
    if collapsed and collapsed[0].isalpha():
        collapsed = collapsed[0].lower() + collapsed[1:]
    return collapsed


def format_conventional_commit(
    commit_type: str, description: str, scope: Optional[str] = None
) -> str:
    """Return a formatted conventional commit subject line."""

    normalized_type = _sanitize_type(commit_type)
    normalized_scope = _sanitize_scope(scope)
    normalized_description = _sanitize_description(description)

    if normalized_scope:
        return f"{normalized_type}({normalized_scope}): {normalized_description}"
    return f"{normalized_type}: {normalized_description}"


def split_commit_template(template: Optional[str]) -> Tuple[str, str]:
    """Split ``"docs: add story file"`` into ``("docs", "add story file")``.

    Types other than fix/docs/feat collapse to ``feat``; a missing template
    yields ``("feat", "update")``.
    """

    match = _TEMPLATE_PATTERN.match((template or "").strip())
    if not match:
        return "feat", (template or "").strip() or _DEFAULT_DESCRIPTION
    commit_type = match.group("type").lower()
    if commit_type not in _STORY_COMMIT_TYPES:
        commit_type = "feat"
    return commit_type, match.group("description").strip() or _DEFAULT_DESCRIPTION


def story_commit_message(template: Optional[str], story_id: str) -> str:
    """Scope a step's commit template to the story, e.g. ``feat(1-2-login): implement story``."""

    commit_type, description = split_commit_template(template)
    return format_conventional_commit(commit_type, description, scope=story_id)
