"""
Sentinel-marked text regions.

A managed artifact may carry named regions the installer owns:

    # BEGIN profile:web            (YAML / shell style)
    ...
    # END profile:web

    <!-- BEGIN local -->           (markdown / HTML style)
    ...
    <!-- END local -->

strip() removes regions, insert() strips then adds one. Because insert
always strips first, applying the same insertion twice yields the same
text as applying it once.
"""

from __future__ import annotations

import fnmatch
import logging
import re
from typing import Optional, Pattern, Union

from .errors import MarkerError

logger = logging.getLogger("libagents.markers")

HASH_STYLE = "hash"
HTML_STYLE = "html"

_MARKER_RE = re.compile(
    r"^\s*(?:#|<!--)\s*(?P<kind>BEGIN|END)\s+(?P<name>\S+?)\s*(?:-->)?\s*$"
)


def marker_lines(name: str, style: str = HASH_STYLE, indent: str = "") -> tuple[str, str]:
    """The (begin, end) lines for a region."""
    if style == HTML_STYLE:
        return f"{indent}<!-- BEGIN {name} -->", f"{indent}<!-- END {name} -->"
    if style == HASH_STYLE:
        return f"{indent}# BEGIN {name}", f"{indent}# END {name}"
    raise ValueError(f"Unknown marker style: {style}")


def _parse(line: str) -> Optional[tuple[str, str]]:
    match = _MARKER_RE.match(line)
    if not match:
        return None
    return match["kind"], match["name"]


def strip(text: str, name: str) -> str:
    """Remove every region whose name matches.

    Args:
        text: Artifact content.
        name: Region name, or a glob such as "profile:*".

    Returns:
        str: Text without the matching regions. A BEGIN marker with no
        matching END is left in place.
    """
    lines = text.splitlines(keepends=True)
    out: list[str] = []
    idx = 0
    while idx < len(lines):
        marker = _parse(lines[idx])
        if marker and marker[0] == "BEGIN" and fnmatch.fnmatchcase(marker[1], name):
            region = marker[1]
            end = next(
                (j for j in range(idx + 1, len(lines)) if _parse(lines[j]) == ("END", region)),
                None,
            )
            if end is not None:
                idx = end + 1
                continue
            logger.warning("Unterminated marker region '%s' left in place", region)
        out.append(lines[idx])
        idx += 1
    return "".join(out)


def insert(
    text: str,
    name: str,
    content: str,
    anchor: Union[str, Pattern[str], None] = None,
    style: str = HASH_STYLE,
    indent: str = "",
) -> str:
    """Insert a named region, replacing any previous region of that name.

    Args:
        text: Artifact content.
        name: Region name.
        content: Lines to place between the markers.
        anchor: Regex; the region goes right after the first matching
            line. None appends to the end of the text.
        style: Marker comment style (HASH_STYLE or HTML_STYLE).
        indent: Prefix for the marker lines.

    Returns:
        str: The new text.

    Raises:
        MarkerError: If the anchor matches no line, or the text holds an
            unterminated region of the same name.
    """
    stripped = strip(text, name)
    if any(_parse(line) == ("BEGIN", name) for line in stripped.splitlines()):
        raise MarkerError(f"Unterminated region '{name}' cannot be replaced")

    begin, end = marker_lines(name, style, indent)
    body = content if content.endswith("\n") or not content else content + "\n"
    block = f"{begin}\n{body}{end}\n"

    lines = stripped.splitlines(keepends=True)
    if anchor is None:
        if lines and not lines[-1].endswith("\n"):
            lines[-1] += "\n"
        return "".join(lines) + block

    pattern = re.compile(anchor) if isinstance(anchor, str) else anchor
    for idx, line in enumerate(lines):
        if pattern.search(line.rstrip("\n")):
            if not line.endswith("\n"):
                lines[idx] = line + "\n"
            lines.insert(idx + 1, block)
            return "".join(lines)
    raise MarkerError(f"Anchor {pattern.pattern!r} not found for region '{name}'")
