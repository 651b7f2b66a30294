from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Protocol

from market_agent.errors import PublishError
from market_agent.sandbox import clip

logger = logging.getLogger(__name__)


class Publisher(Protocol):
    def publish(self, files: list[Path], summary_path: Path, description: str) -> str: ...


class GistPublisher:
    """Publishes a deliverable as a public GitHub Gist through the `gh` CLI."""

    def __init__(self, *, gh_bin: str = "gh", timeout_sec: int = 30) -> None:
        self._gh_bin = gh_bin
        self._timeout_sec = timeout_sec

    def publish(self, files: list[Path], summary_path: Path, description: str) -> str:
        cmd = [
            self._gh_bin,
            "gist",
            "create",
            "--public",
            "--desc",
            description,
            *[str(p) for p in files],
            str(summary_path),
        ]
        try:
            proc = subprocess.run(
                cmd, text=True, capture_output=True, timeout=self._timeout_sec, check=False
            )
        except FileNotFoundError as e:
            raise PublishError(f"{self._gh_bin} not found on PATH") from e
        except subprocess.TimeoutExpired as e:
            raise PublishError(f"gist creation timed out after {self._timeout_sec}s") from e

        if proc.returncode != 0:
            raise PublishError(f"gist creation failed (rc={proc.returncode}): {clip(proc.stderr, max_chars=500)}")
        url = next(
            (ln.strip() for ln in reversed(proc.stdout.splitlines()) if ln.strip().startswith("http")),
            None,
        )
        if url is None:
            raise PublishError("gist creation printed no URL")
        logger.info("published gist %s", url)
        return url
