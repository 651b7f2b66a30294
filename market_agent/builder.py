from __future__ import annotations

import logging
from collections.abc import Mapping
from pathlib import Path

from market_agent.categorize import Categorizer
from market_agent.codegen import CodeGenerator
from market_agent.errors import CodeGenerationError, PublishError
from market_agent.files import merge_files, parse_generated_files
from market_agent.hosting import Publisher
from market_agent.ledger import Journal
from market_agent.pipelines import (
    DEFAULT_PIPELINES,
    PipelineStep,
    ProjectKind,
    StepRole,
    select_pipeline,
)
from market_agent.prompts import MAX_ERROR_CHARS, build_fix_prompt, build_work_prompt
from market_agent.sandbox import job_workspace, sha256_text, write_files, write_text_atomic
from market_agent.schemas import CommandSpec, Deliverable, EventType, TrackedJob
from market_agent.templates import build_deliverable_md, generate_fallback_files
from market_agent.verify import Toolchain

logger = logging.getLogger(__name__)

SUMMARY_FILE = "deliverable.md"


class DeliverableBuilder:
    """Generates, validates, repairs and publishes the files for one awarded job.

    Validation failures never abort a delivery: after the bounded fix loop the last
    known files are published as they are. Only a publishing failure yields no
    deliverable, so the job is retried on the next cycle.
    """

    def __init__(
        self,
        *,
        generator: CodeGenerator | None,
        toolchain: Toolchain,
        publisher: Publisher,
        categorizer: Categorizer,
        journal: Journal,
        work_root: Path,
        max_fix_attempts: int = 2,
        pipelines: Mapping[ProjectKind, Mapping[StepRole, CommandSpec | None]] | None = None,
    ) -> None:
        self._generator = generator
        self._toolchain = toolchain
        self._publisher = publisher
        self._categorizer = categorizer
        self._journal = journal
        self._work_root = work_root
        self._max_fix_attempts = max_fix_attempts
        self._pipelines = pipelines or DEFAULT_PIPELINES

    def produce_deliverable(self, job: TrackedJob, *, cycle: int = 0) -> Deliverable | None:
        category = self._categorizer.categorize(job.as_job())
        workdir = job_workspace(self._work_root, job.job_id)
        logger.info("working on %r [%s] in %s", job.title, category, workdir)

        files, generated = self._initial_files(job, category)
        write_files(workdir, files)
        fixer = self._generator if generated else None
        files = self._validate(job, workdir, files, fixer=fixer, cycle=cycle)

        deliver = {p: c for p, c in files.items() if p != SUMMARY_FILE}
        summary = build_deliverable_md(job, deliver)
        summary_path = workdir / SUMMARY_FILE
        write_text_atomic(summary_path, summary)

        try:
            url = self._publisher.publish(
                [workdir / p for p in deliver], summary_path, job.title or job.job_id
            )
        except PublishError as e:
            logger.error("publishing %s failed: %s", job.job_id, e)
            return None
        return Deliverable(
            url=url, hash="sha256:" + sha256_text(summary), content=summary, path=summary_path
        )

    def _initial_files(self, job: TrackedJob, category: str) -> tuple[dict[str, str], bool]:
        if self._generator is not None:
            try:
                output = self._generator.generate(build_work_prompt(job, category))
            except CodeGenerationError as e:
                logger.warning("code generation failed for %s: %s; using templates", job.job_id, e)
            else:
                files = parse_generated_files(output)
                if files:
                    logger.info("generator produced %d files", len(files))
                    return files, True
                logger.warning("generator output for %s had no files; using templates", job.job_id)
        return generate_fallback_files(job, category), False

    def _validate(
        self,
        job: TrackedJob,
        workdir: Path,
        files: dict[str, str],
        *,
        fixer: CodeGenerator | None,
        cycle: int,
    ) -> dict[str, str]:
        """Run the pipeline; `fixer` (None for template output) repairs failing builds and tests."""
        pipeline = select_pipeline(list(files), table=self._pipelines)
        if not pipeline.steps:
            logger.info("%s project: nothing to validate", pipeline.kind.value)
            return files

        attempt = 0
        while attempt <= self._max_fix_attempts:
            retry = False
            for step in pipeline.steps:
                result = self._toolchain.run(step.spec, workdir)
                self._journal.append(
                    EventType.BUILD_STEP,
                    cycle=cycle,
                    job_id=job.job_id,
                    payload={
                        "kind": pipeline.kind.value,
                        "step": step.role.value,
                        "cmd": step.spec.cmd,
                        "attempt": attempt,
                        "passed": result.passed,
                        "returncode": result.returncode,
                    },
                )
                if result.passed:
                    continue
                if step.role == StepRole.INSTALL:
                    logger.warning("%s failed; proceeding without validation", step.spec.label)
                    return files
                if attempt < self._max_fix_attempts and fixer is not None:
                    fixed = self._fix(fixer, job, step, result.output(max_chars=MAX_ERROR_CHARS), files)
                    if fixed:
                        files = merge_files(files, fixed)
                        write_files(workdir, fixed)
                        retry = True
                        break
                    continue
                logger.warning(
                    "%s still failing after attempt %d/%d; delivering anyway",
                    step.role.value,
                    attempt + 1,
                    self._max_fix_attempts + 1,
                )
            if not retry:
                return files
            attempt += 1
            pipeline = select_pipeline(list(files), table=self._pipelines)
        return files

    def _fix(
        self,
        fixer: CodeGenerator,
        job: TrackedJob,
        step: PipelineStep,
        error_output: str,
        files: dict[str, str],
    ) -> dict[str, str]:
        logger.info("asking generator to fix %s errors", step.role.value)
        prompt = build_fix_prompt(job, stage=step.role.value, error_output=error_output, files=files)
        try:
            fixed = parse_generated_files(fixer.generate(prompt))
        except CodeGenerationError as e:
            logger.warning("fix attempt failed: %s", e)
            return {}
        if not fixed:
            logger.warning("fix response had no parseable files")
            return {}
        logger.info("generator fixed %d files: %s", len(fixed), ", ".join(sorted(fixed)))
        return fixed
