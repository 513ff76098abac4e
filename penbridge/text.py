"""
Text helpers for transcribed lines.

Handwritten checkboxes come back from recognition in several shapes; they are
normalized here so that canonical text comparison ignores recognition noise,
and mapped onto Logseq task markers when a block is written.
"""

import re
from typing import Optional, Tuple

# Markers Logseq treats as task states. Users toggle these by hand, so an
# update must never overwrite them.
TASK_MARKERS = ("TODO", "DOING", "DONE", "LATER", "NOW", "WAITING", "CANCELED", "CANCELLED")

_UNCHECKED_RE = re.compile(r"^\s*(?:\[\s?\]|☐|□|❏)\s*")
_CHECKED_RE = re.compile(r"^\s*(?:\[[xX✓✔]\]|☑|☒|✅)\s*")
_MARKER_RE = re.compile(r"^(" + "|".join(TASK_MARKERS) + r")(?:\s+|$)")
_WHITESPACE_RE = re.compile(r"\s+")


def canonicalize(text: str) -> str:
    """
    Normalize recognized text for change detection.

    Collapses whitespace and rewrites any leading checkbox glyph to ``[ ]`` or
    ``[x]``.
    """
    if not text:
        return ""
    collapsed = _WHITESPACE_RE.sub(" ", text).strip()
    if _CHECKED_RE.match(collapsed):
        rest = _CHECKED_RE.sub("", collapsed, count=1)
        return f"[x] {rest}".rstrip()
    if _UNCHECKED_RE.match(collapsed):
        rest = _UNCHECKED_RE.sub("", collapsed, count=1)
        return f"[ ] {rest}".rstrip()
    return collapsed


def split_task_marker(content: str) -> Tuple[Optional[str], str]:
    """Split ``"TODO buy milk"`` into ``("TODO", "buy milk")``."""
    if not content:
        return None, ""
    match = _MARKER_RE.match(content)
    if not match:
        return None, content
    return match.group(1), content[match.end():]


def format_block_content(text: str) -> str:
    """
    Render a recognized line as block content.

    A leading unchecked box becomes ``TODO``, a checked one ``DONE``.
    """
    canonical = canonicalize(text)
    if canonical.startswith("[x]"):
        return f"DONE {canonical[3:].strip()}".rstrip()
    if canonical.startswith("[ ]"):
        return f"TODO {canonical[3:].strip()}".rstrip()
    return canonical


def merge_preserving_marker(old_content: str, new_text: str) -> str:
    """
    Build updated block content from freshly recognized text.

    If the user set a task marker on the existing block, it wins over whatever
    the recognizer inferred from the ink.
    """
    old_marker, _ = split_task_marker(old_content or "")
    new_content = format_block_content(new_text)
    if old_marker is None:
        return new_content
    _, new_body = split_task_marker(new_content)
    return f"{old_marker} {new_body}".rstrip()
