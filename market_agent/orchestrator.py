from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path

from market_agent.bidding import BidPlacementEngine
from market_agent.builder import DeliverableBuilder
from market_agent.categorize import KeywordCategorizer
from market_agent.client import MarketplaceClient
from market_agent.codegen import CodeGenerator, CommandCodeGenerator, OpenAICodeGenerator
from market_agent.config import AgentSettings, CodegenBackend, RunningConfig
from market_agent.errors import ConfigError
from market_agent.hosting import GistPublisher
from market_agent.ledger import EventJournal, Journal
from market_agent.llm_openai import OpenAITextClient
from market_agent.monitor import AwardMonitor
from market_agent.pipelines import load_pipeline_overrides, merge_pipelines
from market_agent.preflight import Preflight, PreflightVerifier
from market_agent.schemas import AgentState, EventType, TrackedJob, TrackedStatus
from market_agent.store import JsonStateStore, StateStore
from market_agent.submission import SubmissionReconciler
from market_agent.verify import SubprocessToolchain

logger = logging.getLogger(__name__)


class Orchestrator:
    """Single-threaded polling loop that drives every tracked job from bid to payment."""

    def __init__(
        self,
        *,
        store: StateStore,
        journal: Journal,
        bidder: BidPlacementEngine,
        monitor: AwardMonitor,
        builder: DeliverableBuilder,
        preflight: Preflight,
        reconciler: SubmissionReconciler,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._store = store
        self._journal = journal
        self._bidder = bidder
        self._monitor = monitor
        self._builder = builder
        self._preflight = preflight
        self._reconciler = reconciler
        self._sleep = sleep
        self._stop_requested = False
        self._config_error: str | None = None

    def request_stop(self) -> None:
        self._stop_requested = True

    def run_cycle(self, state: AgentState, config: RunningConfig) -> None:
        state.cycle_count += 1
        state.last_poll = datetime.now(tz=UTC)
        logger.info("--- cycle #%d ---", state.cycle_count)
        self._journal.append(EventType.CYCLE_STARTED, cycle=state.cycle_count)

        self._bidder.run(state, config)
        self._monitor.check_bids(state)
        self._monitor.check_for_request_changes(state)

        for job in list(state.active_jobs):
            if job.status == TrackedStatus.AWARDED:
                self._process_job(state, job)

        self._reconciler.check_payments(state)
        logger.info(
            "cycle #%d done: %d pending, %d active, %d delivered, %d paid, earned %.2f",
            state.cycle_count,
            len(state.pending_bids),
            len(state.active_jobs),
            len(state.delivered_jobs),
            len(state.paid_jobs),
            state.total_earnings,
        )

    def _process_job(self, state: AgentState, job: TrackedJob) -> None:
        cycle = state.cycle_count
        try:
            self._monitor.send_working_message(job)
            self._journal.append(
                EventType.WORK_STARTED,
                cycle=cycle,
                job_id=job.job_id,
                payload={"rework": bool(job.changes_feedback)},
            )

            deliverable = self._builder.produce_deliverable(job, cycle=cycle)
            if deliverable is None:
                self._journal.append(EventType.DELIVERABLE_MISSING, cycle=cycle, job_id=job.job_id)
                return
            self._journal.append(
                EventType.DELIVERABLE_READY,
                cycle=cycle,
                job_id=job.job_id,
                payload={"url": deliverable.url, "hash": deliverable.hash},
            )

            if not self._preflight.verify(deliverable.url):
                logger.warning("deliverable %s is not live; not submitting", deliverable.url)
                self._journal.append(
                    EventType.PREFLIGHT_FAILED,
                    cycle=cycle,
                    job_id=job.job_id,
                    payload={"url": deliverable.url},
                )
                return

            self._reconciler.submit(state, job, deliverable)
        except Exception as e:
            logger.exception("processing job %s failed", job.job_id)
            self._journal.append(
                EventType.JOB_ERROR,
                cycle=cycle,
                job_id=job.job_id,
                payload={"stage": "work", "error": f"{type(e).__name__}: {e}"},
            )

    def _current_config(self, last_good: RunningConfig | None, *, cycle: int) -> RunningConfig:
        """Re-read config.json; a file that does not parse keeps the last config that did."""
        try:
            config = self._store.load_config()
        except (OSError, ConfigError) as e:
            fallback = last_good or RunningConfig()
            if self._config_error != str(e):
                self._config_error = str(e)
                logger.error("config.json unreadable, keeping previous settings: %s", e)
                self._journal.append(
                    EventType.CONFIG_INVALID,
                    cycle=cycle,
                    payload={"error": f"{type(e).__name__}: {e}"[:500]},
                )
            return fallback
        if self._config_error is not None:
            logger.info("config.json readable again")
            self._config_error = None
        return config

    def _record_failure(self, state: AgentState, config: RunningConfig, err: Exception, *, stage: str) -> None:
        state.consecutive_errors += 1
        logger.error(
            "%s failed (%d/%d consecutive): %s",
            stage,
            state.consecutive_errors,
            config.max_consecutive_errors,
            err,
            exc_info=err,
        )
        self._journal.append(
            EventType.CYCLE_FAILED,
            cycle=state.cycle_count,
            payload={
                "stage": stage,
                "error": f"{type(err).__name__}: {err}",
                "consecutive_errors": state.consecutive_errors,
            },
        )

    def _save(self, state: AgentState) -> Exception | None:
        try:
            self._store.save_state(state)
        except Exception as e:
            return e
        return None

    def run(self, *, once: bool = False) -> AgentState:
        state = self._store.load_state()
        if state.started_at is None:
            state.started_at = datetime.now(tz=UTC)
        self._stop_requested = False
        config: RunningConfig | None = None

        while True:
            config = self._current_config(config, cycle=state.cycle_count)
            if not once and (self._stop_requested or not config.running):
                logger.info("stop requested; exiting after %d cycles", state.cycle_count)
                break

            failed = False
            try:
                self.run_cycle(state, config)
                state.consecutive_errors = 0
            except Exception as e:
                failed = True
                self._record_failure(state, config, e, stage="cycle")

            save_error = self._save(state)
            if save_error is not None:
                if failed:
                    logger.error("state not saved after failed cycle: %s", save_error)
                else:
                    failed = True
                    self._record_failure(state, config, save_error, stage="save")

            if once:
                break
            if not failed:
                self._sleep(config.poll_interval)
            elif state.consecutive_errors >= config.max_consecutive_errors:
                logger.error(
                    "too many consecutive errors; cooling down for %.0fs",
                    config.error_cooldown_seconds,
                )
                self._journal.append(
                    EventType.COOLDOWN,
                    cycle=state.cycle_count,
                    payload={"seconds": config.error_cooldown_seconds},
                )
                self._sleep(config.error_cooldown_seconds)
                state.consecutive_errors = 0
                if (err := self._save(state)) is not None:
                    logger.error("state not saved after cooldown: %s", err)
            else:
                self._sleep(config.error_retry_seconds)
        return state


def _build_generator(settings: AgentSettings, config: RunningConfig) -> CodeGenerator:
    if config.codegen_backend == CodegenBackend.OPENAI:
        if not settings.openai_api_key:
            raise ConfigError("codegen_backend is 'openai' but OPENAI_API_KEY is not set")
        client = OpenAITextClient(api_key=settings.openai_api_key, base_url=settings.openai_base_url)
        return OpenAICodeGenerator(client=client, model=config.openai_model)
    return CommandCodeGenerator(
        command=config.codegen_command,
        models=config.codegen_models,
        timeout_sec=config.codegen_timeout_sec,
    )


def _pipeline_table(store: JsonStateStore, config: RunningConfig):
    if not config.pipelines_file:
        return merge_pipelines()
    path = Path(config.pipelines_file).expanduser()
    if not path.is_absolute():
        path = store.data_dir / path
    if not path.exists():
        raise ConfigError(f"pipelines file not found: {path}")
    return merge_pipelines(load_pipeline_overrides(path))


def build_orchestrator(
    *,
    settings: AgentSettings,
    store: JsonStateStore,
    journal: Journal | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Orchestrator:
    config = store.load_config()
    journal = journal or EventJournal(store.events_path)
    client = MarketplaceClient(base_url=settings.base_url, api_key=settings.require_api_key())
    categorizer = KeywordCategorizer()
    builder = DeliverableBuilder(
        generator=_build_generator(settings, config),
        toolchain=SubprocessToolchain(),
        publisher=GistPublisher(),
        categorizer=categorizer,
        journal=journal,
        work_root=store.work_dir,
        max_fix_attempts=config.max_fix_attempts,
        pipelines=_pipeline_table(store, config),
    )
    return Orchestrator(
        store=store,
        journal=journal,
        bidder=BidPlacementEngine(
            client=client, categorizer=categorizer, journal=journal, sleep=sleep
        ),
        monitor=AwardMonitor(client=client, journal=journal),
        builder=builder,
        preflight=PreflightVerifier(),
        reconciler=SubmissionReconciler(client=client, journal=journal),
        sleep=sleep,
    )
