from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any

from market_agent.bidding import BidPlacementEngine
from market_agent.builder import DeliverableBuilder
from market_agent.categorize import KeywordCategorizer
from market_agent.client import ApiResponse
from market_agent.errors import CodeGenerationError, PublishError
from market_agent.ledger import InMemoryJournal
from market_agent.monitor import AwardMonitor
from market_agent.orchestrator import Orchestrator
from market_agent.schemas import Bid, CommandSpec, Job, JobDetail, Message, TrackedJob
from market_agent.store import JsonStateStore
from market_agent.submission import SubmissionReconciler
from market_agent.verify import CommandResult

GIST_URL = "https://gist.github.com/agent/abc123"


def make_job(job_id: str = "J1", **kw: Any) -> Job:
    data: dict[str, Any] = {
        "job_id": job_id,
        "title": "NEAR smart contract",
        "description": "Build a smart contract in Rust for token vesting.",
        "budget_amount": 10.0,
    }
    data.update(kw)
    return Job(**data)


def make_tracked(job_id: str = "J1", **kw: Any) -> TrackedJob:
    data: dict[str, Any] = {
        "job_id": job_id,
        "amount": 2.0,
        "title": "NEAR smart contract",
        "description": "Build a smart contract in Rust.",
        "assignment_id": f"A-{job_id}",
    }
    data.update(kw)
    return TrackedJob(**data)


def make_detail(job_id: str, *, status: str = "awarded", assignment_status: str = "in_progress", **kw: Any) -> JobDetail:
    data: dict[str, Any] = {
        "id": job_id,
        "title": "NEAR smart contract",
        "description": "Build a smart contract in Rust.",
        "status": status,
        "my_assignments": [{"id": f"A-{job_id}", "status": assignment_status}],
    }
    data.update(kw)
    return JobDetail.model_validate(data)


class FakeMarketplace:
    """In-memory marketplace: tests script listings and statuses, every call is recorded."""

    def __init__(self) -> None:
        self.jobs: list[Job] = []
        self.bids: list[Bid] = []
        self.details: dict[str, JobDetail] = {}
        self.messages: dict[str, list[Message]] = {}

        self.list_jobs_status = 200
        self.place_status = 201
        self.place_errors: dict[str, Exception] = {}
        self.submit_status = 200

        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self.sent_messages: list[tuple[str, str]] = []
        self.submissions: list[tuple[str, str, str]] = []

    def list_open_jobs(self, **filters: Any) -> ApiResponse:
        self.calls.append(("list_open_jobs", ()))
        if self.list_jobs_status != 200:
            return ApiResponse(self.list_jobs_status, {"detail": "unavailable"})
        return ApiResponse(200, list(self.jobs))

    def list_my_bids(self, limit: int = 1000) -> ApiResponse:
        self.calls.append(("list_my_bids", (limit,)))
        return ApiResponse(200, [b.model_copy() for b in self.bids])

    def place_bid(self, job_id: str, *, amount: float, eta_seconds: int, proposal: str) -> ApiResponse:
        self.calls.append(("place_bid", (job_id, amount)))
        if job_id in self.place_errors:
            raise self.place_errors[job_id]
        if 200 <= self.place_status < 300:
            self.bids.append(Bid(bid_id=f"B-{job_id}", job_id=job_id, amount=amount, status="pending"))
        return ApiResponse(self.place_status, {"id": f"B-{job_id}"})

    def get_job_detail(self, job_id: str) -> ApiResponse:
        self.calls.append(("get_job_detail", (job_id,)))
        detail = self.details.get(job_id)
        if detail is None:
            return ApiResponse(404, {"detail": "not found"})
        return ApiResponse(200, detail.model_copy(deep=True))

    def send_assignment_message(self, assignment_id: str, body: str) -> ApiResponse:
        self.sent_messages.append((assignment_id, body))
        return ApiResponse(201, {"ok": True})

    def get_assignment_messages(self, assignment_id: str) -> ApiResponse:
        return ApiResponse(200, list(self.messages.get(assignment_id, [])))

    def submit_deliverable(self, job_id: str, *, url: str, hash: str) -> ApiResponse:
        self.submissions.append((job_id, url, hash))
        detail = self.details.get(job_id)
        if 200 <= self.submit_status < 300 and detail is not None:
            for a in detail.my_assignments:
                a.status = "submitted"
        return ApiResponse(self.submit_status, {"ok": self.submit_status < 300})

    def get_wallet_balance(self) -> ApiResponse:
        return ApiResponse(200, {"balance": "0"})

    def accept_bid(self, job_id: str) -> None:
        for b in self.bids:
            if b.job_id == job_id:
                b.status = "accepted"
        self.details.setdefault(job_id, make_detail(job_id))

    def count(self, name: str) -> int:
        return sum(1 for call, _ in self.calls if call == name)


class ScriptedGenerator:
    """Returns queued outputs in order; an Exception in the queue is raised instead."""

    def __init__(self, outputs: list[str | Exception]) -> None:
        self._outputs = list(outputs)
        self.prompts: list[str] = []

    def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if not self._outputs:
            raise CodeGenerationError("no scripted output left")
        out = self._outputs.pop(0)
        if isinstance(out, Exception):
            raise out
        return out


class ScriptedToolchain:
    def __init__(self, passes: bool | Callable[[CommandSpec], bool] = True) -> None:
        self._passes = passes
        self.runs: list[tuple[str, Path]] = []

    def run(self, step: CommandSpec, cwd: Path) -> CommandResult:
        self.runs.append((step.cmd, cwd))
        ok = self._passes(step) if callable(self._passes) else self._passes
        return CommandResult(
            cmd=step.cmd,
            returncode=0 if ok else 1,
            stdout="",
            stderr="" if ok else "error: boom",
        )


class FakePublisher:
    def __init__(self, url: str = GIST_URL, *, fail: bool = False) -> None:
        self.url = url
        self.fail = fail
        self.published: list[dict[str, str]] = []

    def publish(self, files: list[Path], summary_path: Path, description: str) -> str:
        if self.fail:
            raise PublishError("gh: authentication required")
        snapshot = {p.name: p.read_text(encoding="utf-8") for p in files}
        snapshot[summary_path.name] = summary_path.read_text(encoding="utf-8")
        self.published.append(snapshot)
        return self.url


class StaticPreflight:
    def __init__(self, ok: bool = True) -> None:
        self.ok = ok
        self.checked: list[str] = []

    def verify(self, url: str) -> bool:
        self.checked.append(url)
        return self.ok


class RecordingSleep:
    def __init__(self, on_call: Callable[[list[float]], None] | None = None) -> None:
        self.calls: list[float] = []
        self._on_call = on_call

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        if self._on_call is not None:
            self._on_call(self.calls)


README_OUTPUT = "=== FILE: README.md ===\n# Vesting contract\n\nUsage notes.\n"


def make_builder(
    tmp_path: Path,
    *,
    journal: InMemoryJournal,
    generator: ScriptedGenerator | None = None,
    toolchain: ScriptedToolchain | None = None,
    publisher: FakePublisher | None = None,
    max_fix_attempts: int = 2,
) -> DeliverableBuilder:
    return DeliverableBuilder(
        generator=generator,
        toolchain=toolchain or ScriptedToolchain(),
        publisher=publisher or FakePublisher(),
        categorizer=KeywordCategorizer(),
        journal=journal,
        work_root=tmp_path / "work",
        max_fix_attempts=max_fix_attempts,
    )


def make_orchestrator(
    tmp_path: Path,
    client: FakeMarketplace,
    *,
    journal: InMemoryJournal | None = None,
    generator: ScriptedGenerator | None = None,
    preflight: StaticPreflight | None = None,
    sleep: Callable[[float], None] | None = None,
    bidder: Any = None,
) -> tuple[Orchestrator, JsonStateStore, InMemoryJournal]:
    journal = journal or InMemoryJournal()
    store = JsonStateStore(tmp_path / "data")
    sleep = sleep or RecordingSleep()
    categorizer = KeywordCategorizer()
    orchestrator = Orchestrator(
        store=store,
        journal=journal,
        bidder=bidder
        or BidPlacementEngine(client=client, categorizer=categorizer, journal=journal, sleep=sleep),
        monitor=AwardMonitor(client=client, journal=journal),
        builder=make_builder(
            tmp_path,
            journal=journal,
            generator=generator or ScriptedGenerator([README_OUTPUT] * 10),
        ),
        preflight=preflight or StaticPreflight(),
        reconciler=SubmissionReconciler(client=client, journal=journal),
        sleep=sleep,
    )
    return orchestrator, store, journal
