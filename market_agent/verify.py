"""Runs install/build/test steps for a generated project.

Each step is a shell command executed in the job workspace. Steps run in their own
process group so a timeout also stops whatever the command spawned (dev servers,
test watchers), not just the shell.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import sys
import time
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from market_agent.schemas import CommandSpec

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
DEFAULT_STEP_TIMEOUT_SEC = 300
SECRET_SUFFIXES = ("_API_KEY", "_TOKEN", "_SECRET")


@dataclass(frozen=True)
class CommandResult:
    cmd: str
    returncode: int
    stdout: str = ""
    stderr: str = ""
    duration_s: float = 0.0
    timed_out: bool = False
    accepted_codes: tuple[int, ...] = (0,)

    @property
    def passed(self) -> bool:
        return not self.timed_out and self.returncode in self.accepted_codes

    def output(self, *, max_chars: int = 2000) -> str:
        """stderr then stdout, keeping the end, which is where compilers put the error."""
        parts = [s.strip() for s in (self.stderr, self.stdout) if s.strip()]
        if self.timed_out:
            parts.insert(0, f"(timed out after {self.duration_s:.0f}s)")
        text = "\n".join(parts)
        return text if len(text) <= max_chars else text[-max_chars:]


class Toolchain(Protocol):
    def run(self, step: CommandSpec, cwd: Path) -> CommandResult: ...


def build_env(extra: Mapping[str, str] | None = None, *, scrub_secrets: bool = True) -> dict[str, str]:
    """Environment for a step: ours, minus credentials, with our interpreter first on PATH."""
    env = {
        k: v
        for k, v in os.environ.items()
        if not (scrub_secrets and k.endswith(SECRET_SUFFIXES))
    }
    env.setdefault("CI", "1")
    env.setdefault("PYTHONHASHSEED", "0")

    interpreter_dir = Path(sys.executable).parent
    if not interpreter_dir.exists():
        interpreter_dir = Path(sys.executable).resolve().parent
    env["PATH"] = os.pathsep.join(p for p in (str(interpreter_dir), env.get("PATH", "")) if p)

    env.update({str(k): str(v) for k, v in (extra or {}).items()})
    return env


def _decode(raw: str | bytes | None) -> str:
    if isinstance(raw, bytes):
        return raw.decode("utf-8", errors="replace")
    return raw or ""


def _kill_group(proc: subprocess.Popen[str]) -> None:
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        proc.kill()


def run_command(spec: CommandSpec, *, cwd: Path, scrub_secrets: bool = True) -> CommandResult:
    timeout = spec.timeout_sec or DEFAULT_STEP_TIMEOUT_SEC
    started = time.monotonic()
    proc = subprocess.Popen(
        spec.cmd,
        cwd=cwd,
        env=build_env(spec.env, scrub_secrets=scrub_secrets),
        shell=True,
        text=True,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        start_new_session=True,
    )
    timed_out = False
    try:
        stdout, stderr = proc.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        timed_out = True
        _kill_group(proc)
        stdout, stderr = proc.communicate()

    return CommandResult(
        cmd=spec.cmd,
        returncode=TIMEOUT_EXIT_CODE if timed_out else proc.returncode,
        stdout=_decode(stdout),
        stderr=_decode(stderr),
        duration_s=time.monotonic() - started,
        timed_out=timed_out,
        accepted_codes=tuple(spec.expect_exit_codes),
    )


class SubprocessToolchain:
    def __init__(self, *, scrub_secrets: bool = True) -> None:
        self._scrub_secrets = scrub_secrets

    def run(self, step: CommandSpec, cwd: Path) -> CommandResult:
        logger.info("running %s: %s", step.label, step.cmd)
        result = run_command(step, cwd=cwd, scrub_secrets=self._scrub_secrets)
        if result.passed:
            logger.info("%s ok in %.1fs", step.label, result.duration_s)
        else:
            logger.info(
                "%s failed (rc=%s, %.1fs): %s",
                step.label,
                result.returncode,
                result.duration_s,
                result.output(max_chars=200),
            )
        return result
