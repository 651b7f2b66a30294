from __future__ import annotations

import shlex
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

from market_agent.schemas import CommandSpec


class ProjectKind(str, Enum):
    NODE = "node"
    PYTHON = "python"
    RUST = "rust"
    STATIC = "static"


class StepRole(str, Enum):
    INSTALL = "install"
    BUILD = "build"
    TEST = "test"


STEP_ORDER: tuple[StepRole, ...] = (StepRole.INSTALL, StepRole.BUILD, StepRole.TEST)


@dataclass(frozen=True)
class PipelineStep:
    role: StepRole
    spec: CommandSpec


@dataclass(frozen=True)
class Pipeline:
    kind: ProjectKind
    steps: tuple[PipelineStep, ...]

    def step(self, role: StepRole) -> PipelineStep | None:
        return next((s for s in self.steps if s.role == role), None)


# `{py_files}` expands to the shell-quoted list of generated Python files.
DEFAULT_PIPELINES: dict[ProjectKind, dict[StepRole, CommandSpec | None]] = {
    ProjectKind.NODE: {
        StepRole.INSTALL: CommandSpec(name="npm install", cmd="npm install --ignore-scripts 2>&1", timeout_sec=120),
        StepRole.BUILD: CommandSpec(name="npm run build", cmd="npm run build 2>&1", timeout_sec=60),
        StepRole.TEST: CommandSpec(name="npm test", cmd="npm test 2>&1", timeout_sec=60),
    },
    ProjectKind.PYTHON: {
        StepRole.INSTALL: None,
        StepRole.BUILD: CommandSpec(name="py_compile", cmd="python -m py_compile {py_files} 2>&1", timeout_sec=30),
        StepRole.TEST: CommandSpec(name="pytest", cmd="python -m pytest -x 2>&1", timeout_sec=60),
    },
    ProjectKind.RUST: {
        StepRole.INSTALL: None,
        StepRole.BUILD: CommandSpec(name="cargo check", cmd="cargo check 2>&1", timeout_sec=120),
        StepRole.TEST: None,
    },
    ProjectKind.STATIC: {},
}


def detect_project_kind(paths: list[str]) -> ProjectKind:
    if any(p == "package.json" or p.endswith("/package.json") for p in paths):
        return ProjectKind.NODE
    if any(p.endswith(".py") for p in paths):
        return ProjectKind.PYTHON
    if any(p.endswith(".rs") or p == "Cargo.toml" or p.endswith("/Cargo.toml") for p in paths):
        return ProjectKind.RUST
    return ProjectKind.STATIC


def _has_python_tests(paths: list[str]) -> bool:
    return any(p.endswith(".py") and "test" in Path(p).name for p in paths)


def _parse_command(raw: Any, *, where: str) -> CommandSpec | None:
    if raw is None:
        return None
    if isinstance(raw, str):
        return CommandSpec(cmd=raw)
    if isinstance(raw, dict):
        return CommandSpec.model_validate(raw)
    raise ValueError(f"{where}: step must be a command string, a mapping, or null")


def load_pipeline_overrides(path: Path) -> dict[ProjectKind, dict[StepRole, CommandSpec | None]]:
    """Read `kind -> {install|build|test -> step}` overrides from a YAML file.

    Roles a kind does not mention keep their defaults; an explicit null removes the step.
    """
    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError("pipelines file must be a YAML mapping")

    out: dict[ProjectKind, dict[StepRole, CommandSpec | None]] = {}
    for raw_kind, raw_steps in data.items():
        try:
            kind = ProjectKind(str(raw_kind))
        except ValueError as e:
            raise ValueError(f"unknown project kind in pipelines file: {raw_kind!r}") from e
        if not isinstance(raw_steps, dict):
            raise ValueError(f"{kind.value}: expected a mapping of step roles")
        steps: dict[StepRole, CommandSpec | None] = {}
        for raw_role, raw_step in raw_steps.items():
            try:
                role = StepRole(str(raw_role))
            except ValueError as e:
                raise ValueError(f"{kind.value}: unknown step role {raw_role!r}") from e
            steps[role] = _parse_command(raw_step, where=f"{kind.value}.{role.value}")
        out[kind] = steps
    return out


def merge_pipelines(
    overrides: Mapping[ProjectKind, Mapping[StepRole, CommandSpec | None]] | None = None,
) -> dict[ProjectKind, dict[StepRole, CommandSpec | None]]:
    merged = {kind: dict(steps) for kind, steps in DEFAULT_PIPELINES.items()}
    for kind, steps in (overrides or {}).items():
        merged.setdefault(kind, {}).update(steps)
    return merged


def _render(spec: CommandSpec, *, paths: list[str]) -> CommandSpec:
    if "{py_files}" not in spec.cmd:
        return spec
    py_files = " ".join(shlex.quote(p) for p in paths if p.endswith(".py"))
    return spec.model_copy(update={"cmd": spec.cmd.replace("{py_files}", py_files)})


def select_pipeline(
    paths: list[str],
    *,
    table: Mapping[ProjectKind, Mapping[StepRole, CommandSpec | None]] | None = None,
) -> Pipeline:
    kind = detect_project_kind(paths)
    table = table or DEFAULT_PIPELINES
    configured = table.get(kind, {})

    steps: list[PipelineStep] = []
    for role in STEP_ORDER:
        spec = configured.get(role)
        if spec is None:
            continue
        if kind == ProjectKind.PYTHON and role == StepRole.TEST and not _has_python_tests(paths):
            continue
        steps.append(PipelineStep(role=role, spec=_render(spec, paths=paths)))
    return Pipeline(kind=kind, steps=tuple(steps))
