"""The `=== FILE: <path> ===` convention used to exchange whole file sets with code generators.

A marker is recognised only at the start of a line, so marker-like text inside a
file body (for example in a string literal or a comment) never splits a file.
File contents are canonical when they carry no leading blank lines and end with
exactly one newline; `parse_generated_files(serialize_files(files)) == files`
holds for canonical contents.
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping

from market_agent.sandbox import is_safe_relpath

_MARKER_RE = re.compile(r"^={3,}[ \t]*FILE:[ \t]*(?P<path>.+?)[ \t]*(?:={3,})?[ \t]*$", re.I | re.M)
_FENCE_OPEN_RE = re.compile(r"^```[\w+.-]*[ \t]*$")
_ENVELOPE_KEYS = ("reply", "message", "content")


def canonical_content(content: str) -> str:
    body = content.replace("\r\n", "\n").strip("\n")
    return body + "\n" if body.strip() else ""


def _strip_code_fence(body: str) -> str:
    lines = body.split("\n")
    if len(lines) >= 2 and _FENCE_OPEN_RE.match(lines[0].strip()) and lines[-1].strip() == "```":
        return "\n".join(lines[1:-1])
    return body


def unwrap_envelope(text: str) -> str:
    """Return the text payload of a JSON envelope such as `{"reply": "..."}`, else `text` unchanged."""
    stripped = text.strip()
    if not stripped.startswith("{"):
        return text
    try:
        obj = json.loads(stripped)
    except json.JSONDecodeError:
        return text
    if not isinstance(obj, dict):
        return text
    for key in _ENVELOPE_KEYS:
        value = obj.get(key)
        if isinstance(value, str):
            return value
    return text


def parse_generated_files(output: str) -> dict[str, str]:
    text = unwrap_envelope(output or "").replace("\r\n", "\n")
    matches = list(_MARKER_RE.finditer(text))
    files: dict[str, str] = {}
    for i, m in enumerate(matches):
        path = m.group("path").strip().strip("`'\"").strip()
        start = m.end() + 1
        end = matches[i + 1].start() if i + 1 < len(matches) else len(text)
        body = text[start:end] if start <= end else ""
        content = canonical_content(_strip_code_fence(body.strip("\n")))
        if not path or not content or not is_safe_relpath(path):
            continue
        files[path] = content
    return files


def serialize_files(files: Mapping[str, str]) -> str:
    return "\n\n".join(
        f"=== FILE: {path} ===\n{canonical_content(content)}" for path, content in files.items()
    )


def merge_files(base: Mapping[str, str], updates: Mapping[str, str]) -> dict[str, str]:
    """Replace files present in `updates` by path and keep the rest of `base`."""
    merged = dict(base)
    merged.update(updates)
    return merged
