"""Parse `MOVE TO:` routing directives out of agent replies."""

from __future__ import annotations

import re
from typing import Any

DONE = "DONE"
STUCK = "STUCK"

# The name must start with a word character or hyphen, so a placeholder like
# `MOVE TO: <queue>` never shadows a later real directive.
_DIRECTIVE_RE = re.compile(r"MOVE TO:[ \t]*([\w-][\w \t-]*)", re.IGNORECASE)
_DIRECTIVE_MARKER_RE = re.compile(r"MOVE TO:", re.IGNORECASE)
# Leftovers from JSON-encoded content blocks, e.g. `Done"}]`.
_TRAILING_JUNK_RE = re.compile(r"[\s\"'`\]\[}{)(.,;:!?]+$")


def extract_content(raw: Any) -> str:
    """Normalize agent output to plain text.

    Strings pass through; lists of content blocks contribute their
    `text`-typed blocks joined by newlines; anything else is empty.
    """

    if isinstance(raw, str):
        return raw
    if isinstance(raw, list):
        parts = [
            block["text"]
            for block in raw
            if isinstance(block, dict)
            and block.get("type") == "text"
            and isinstance(block.get("text"), str)
        ]
        return "\n".join(parts)
    return ""


def parse_move_directive(text: Any) -> str | None:
    """Return the queue name named by the first `MOVE TO:` directive, if any."""

    content = extract_content(text)
    match = _DIRECTIVE_RE.search(content)
    if match is None:
        return None
    name = _TRAILING_JUNK_RE.sub("", match.group(1).strip())
    return name or None


def extract_response_text(raw: Any) -> str | None:
    """Return the reply text preceding the directive, or None when nothing is left."""

    if not isinstance(raw, (str, list)):
        return None
    content = extract_content(raw)
    marker = _DIRECTIVE_MARKER_RE.search(content)
    if marker is not None:
        content = content[: marker.start()]
    stripped = content.strip()
    return stripped or None


def is_sentinel(name: str, sentinel: str) -> bool:
    return name.strip().upper() == sentinel
