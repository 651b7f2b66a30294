"""Filesystem helpers for job workspaces and the agent's data directory."""

from __future__ import annotations

import hashlib
import os
import re
import shutil
import tempfile
from collections.abc import Mapping
from pathlib import Path, PurePosixPath

_UNSAFE_ID_CHARS = re.compile(r"[^A-Za-z0-9._-]+")
_DRIVE_PREFIX = re.compile(r"^[A-Za-z]:")
_ELLIPSIS = "\n... (truncated)\n"


def sha256_text(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def write_text_atomic(path: Path, text: str) -> None:
    """Readers (the dashboard, a second CLI) see either the old file or the new one."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def is_safe_relpath(path: str) -> bool:
    if not path or "\x00" in path or _DRIVE_PREFIX.match(path):
        return False
    posix = PurePosixPath(path.replace("\\", "/"))
    return not posix.is_absolute() and ".." not in posix.parts


def job_workspace(work_root: Path, job_id: str, *, fresh: bool = True) -> Path:
    """Directory that holds one job's generated files; recreated empty unless `fresh=False`."""
    path = work_root / (_UNSAFE_ID_CHARS.sub("_", job_id).strip("._") or "job")
    if fresh:
        shutil.rmtree(path, ignore_errors=True)
    path.mkdir(parents=True, exist_ok=True)
    return path


def write_files(root: Path, files: Mapping[str, str]) -> list[Path]:
    """Write relative-path files under `root`; unsafe paths are rejected before anything is written."""
    unsafe = [rel for rel in files if not is_safe_relpath(rel)]
    if unsafe:
        raise ValueError(f"unsafe file path: {unsafe[0]!r}")
    written = [root / rel for rel in files]
    for target, content in zip(written, files.values()):
        write_text_atomic(target, content)
    return written


def clip(text: str | None, *, max_chars: int = 2000) -> str:
    """Keep the start of `text`, marking the cut when it is longer than `max_chars`."""
    text = text or ""
    if len(text) <= max_chars:
        return text
    return text[: max(max_chars - len(_ELLIPSIS), 0)] + _ELLIPSIS
