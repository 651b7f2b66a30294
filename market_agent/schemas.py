from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from market_agent.errors import StateInvariantError


class JobStatus(str, Enum):
    OPEN = "open"
    AWARDED = "awarded"
    EXPIRED = "expired"
    COMPLETED = "completed"
    CLOSED = "closed"


class BidStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class AssignmentStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    SUBMITTED = "submitted"
    ACCEPTED = "accepted"
    DISPUTED = "disputed"


class TrackedStatus(str, Enum):
    AWARDED = "awarded"
    DELIVERED = "delivered"
    PAID = "paid"


class EventType(str, Enum):
    CYCLE_STARTED = "cycle_started"
    CYCLE_FAILED = "cycle_failed"
    CONFIG_INVALID = "config_invalid"
    COOLDOWN = "cooldown"

    BID_PLACED = "bid_placed"
    BID_FAILED = "bid_failed"
    BID_DUPLICATE = "bid_duplicate"
    BID_ACCEPTED = "bid_accepted"
    BID_REJECTED = "bid_rejected"

    WORK_STARTED = "work_started"
    BUILD_STEP = "build_step"
    DELIVERABLE_READY = "deliverable_ready"
    DELIVERABLE_MISSING = "deliverable_missing"
    PREFLIGHT_FAILED = "preflight_failed"

    JOB_SUBMITTED = "job_submitted"
    SUBMIT_FAILED = "submit_failed"
    CHANGES_REQUESTED = "changes_requested"
    JOB_DISPUTED = "job_disputed"
    JOB_PAID = "job_paid"
    JOB_EXPIRED = "job_expired"
    JOB_ERROR = "job_error"


def _coerce_float(v: Any) -> Any:
    # The marketplace sends amounts as strings ("1.50"); an empty string means "no budget".
    if isinstance(v, str):
        s = v.strip()
        if not s:
            return None
        try:
            return float(s)
        except ValueError:
            return v
    return v


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class Job(_WireModel):
    job_id: str = Field(validation_alias=AliasChoices("job_id", "id"))
    title: str = ""
    description: str = ""
    budget_amount: float | None = None
    bid_count: int = 0
    job_type: str = "standard"
    tags: list[str] = Field(default_factory=list)
    status: str = JobStatus.OPEN.value
    worker_agent_id: str | None = None

    @field_validator("budget_amount", mode="before")
    @classmethod
    def _coerce_budget(cls, v: Any) -> Any:
        return _coerce_float(v)

    @field_validator("title", "description", mode="before")
    @classmethod
    def _none_to_empty(cls, v: Any) -> Any:
        return "" if v is None else v

    @field_validator("bid_count", mode="before")
    @classmethod
    def _none_to_zero(cls, v: Any) -> Any:
        return 0 if v is None else v

    @field_validator("tags", mode="before")
    @classmethod
    def _clean_tags(cls, v: Any) -> Any:
        if v is None:
            return []
        if isinstance(v, list):
            return [str(t) for t in v if t is not None]
        return v


class Bid(_WireModel):
    bid_id: str | None = Field(default=None, validation_alias=AliasChoices("bid_id", "id"))
    job_id: str
    amount: float = 0.0
    proposal: str = ""
    eta_seconds: int | None = None
    status: str = BidStatus.PENDING.value

    @field_validator("amount", mode="before")
    @classmethod
    def _coerce_amount(cls, v: Any) -> Any:
        v = _coerce_float(v)
        return 0.0 if v is None else v


class Assignment(_WireModel):
    assignment_id: str = Field(validation_alias=AliasChoices("assignment_id", "id"))
    status: str = AssignmentStatus.IN_PROGRESS.value
    escrow_amount: float | None = None

    @field_validator("escrow_amount", mode="before")
    @classmethod
    def _coerce_escrow(cls, v: Any) -> Any:
        return _coerce_float(v)


class JobDetail(Job):
    my_assignments: list[Assignment] = Field(default_factory=list)

    @field_validator("my_assignments", mode="before")
    @classmethod
    def _none_to_list(cls, v: Any) -> Any:
        return [] if v is None else v

    def pick_assignment(self, *, assignment_id: str | None = None) -> Assignment | None:
        """Choose the assignment that belongs to this agent's tracked work.

        Prefers a known assignment id, then one still in progress, then the first listed.
        """
        if not self.my_assignments:
            return None
        if assignment_id:
            for a in self.my_assignments:
                if a.assignment_id == assignment_id:
                    return a
        for a in self.my_assignments:
            if a.status == AssignmentStatus.IN_PROGRESS.value:
                return a
        return self.my_assignments[0]


class Message(_WireModel):
    body: str = ""
    sender: str | None = Field(
        default=None, validation_alias=AliasChoices("sender", "sender_agent_id", "author")
    )
    created_at: str | None = None

    @field_validator("body", mode="before")
    @classmethod
    def _none_to_empty(cls, v: Any) -> Any:
        return "" if v is None else v


class PendingBid(BaseModel):
    job_id: str
    amount: float
    title: str = ""
    category: str | None = None
    placed_at: datetime


class TrackedJob(BaseModel):
    job_id: str
    bid_id: str | None = None
    assignment_id: str | None = None
    assignment_status: str | None = None
    escrow_amount: float | None = None

    amount: float = 0.0
    budget_amount: float | None = None
    title: str = "(unknown)"
    description: str = ""
    tags: list[str] = Field(default_factory=list)

    status: TrackedStatus = TrackedStatus.AWARDED
    message_sent: bool = False
    delivered_at: datetime | None = None
    paid_at: datetime | None = None
    deliverable_url: str | None = None
    changes_feedback: str | None = None

    def as_job(self) -> Job:
        return Job(
            job_id=self.job_id,
            title=self.title,
            description=self.description,
            budget_amount=self.budget_amount,
            tags=list(self.tags),
            status=JobStatus.AWARDED.value,
        )


@dataclass(frozen=True)
class Deliverable:
    url: str
    hash: str
    content: str
    path: Path | None = None


class AgentState(BaseModel):
    schema_version: int = Field(default=1, ge=1)

    already_bid_job_ids: list[str] = Field(default_factory=list)
    pending_bids: list[PendingBid] = Field(default_factory=list)
    active_jobs: list[TrackedJob] = Field(default_factory=list)
    delivered_jobs: list[TrackedJob] = Field(default_factory=list)
    paid_jobs: list[TrackedJob] = Field(default_factory=list)

    total_earnings: float = 0.0
    bids_placed: int = 0
    bids_won: int = 0
    bids_rejected: int = 0
    cycle_count: int = 0
    consecutive_errors: int = 0
    started_at: datetime | None = None
    last_poll: datetime | None = None

    def has_bid_on(self, job_id: str) -> bool:
        return job_id in self.already_bid_job_ids

    def mark_bid(self, job_id: str) -> None:
        if job_id not in self.already_bid_job_ids:
            self.already_bid_job_ids.append(job_id)

    def reset_bids(self) -> None:
        self.already_bid_job_ids = []

    def tracked_ids(self) -> set[str]:
        return {
            j.job_id for j in (*self.active_jobs, *self.delivered_jobs, *self.paid_jobs)
        }

    def find_active(self, job_id: str) -> TrackedJob | None:
        return next((j for j in self.active_jobs if j.job_id == job_id), None)

    def find_delivered(self, job_id: str) -> TrackedJob | None:
        return next((j for j in self.delivered_jobs if j.job_id == job_id), None)

    def is_paid(self, job_id: str) -> bool:
        return any(j.job_id == job_id for j in self.paid_jobs)

    def drop_pending(self, job_id: str) -> bool:
        before = len(self.pending_bids)
        self.pending_bids = [b for b in self.pending_bids if b.job_id != job_id]
        return len(self.pending_bids) != before

    def move_to_delivered(self, job: TrackedJob) -> None:
        self.active_jobs = [j for j in self.active_jobs if j.job_id != job.job_id]
        if self.find_delivered(job.job_id) is None:
            self.delivered_jobs.append(job)

    def move_to_active(self, job: TrackedJob) -> None:
        self.delivered_jobs = [j for j in self.delivered_jobs if j.job_id != job.job_id]
        if self.find_active(job.job_id) is None:
            self.active_jobs.append(job)

    def move_to_paid(self, job: TrackedJob) -> None:
        self.delivered_jobs = [j for j in self.delivered_jobs if j.job_id != job.job_id]
        if not self.is_paid(job.job_id):
            self.paid_jobs.append(job)

    def drop_delivered(self, job_id: str) -> None:
        self.delivered_jobs = [j for j in self.delivered_jobs if j.job_id != job_id]

    def check_disjoint(self) -> None:
        seen: dict[str, str] = {}
        collections: list[tuple[str, list[str]]] = [
            ("pending_bids", [b.job_id for b in self.pending_bids]),
            ("active_jobs", [j.job_id for j in self.active_jobs]),
            ("delivered_jobs", [j.job_id for j in self.delivered_jobs]),
            ("paid_jobs", [j.job_id for j in self.paid_jobs]),
        ]
        for name, ids in collections:
            for job_id in ids:
                other = seen.get(job_id)
                if other is not None:
                    raise StateInvariantError(
                        f"job {job_id} tracked in both {other} and {name}"
                    )
                seen[job_id] = name


class JournalEvent(BaseModel):
    schema_version: int = Field(default=1, ge=1)
    event_id: str
    prev_hash: str | None = None
    hash: str
    ts: datetime
    cycle: int = Field(ge=0)
    type: EventType
    job_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)


class CommandSpec(BaseModel):
    cmd: str
    name: str | None = None
    timeout_sec: int | None = Field(default=None, ge=1, le=24 * 60 * 60)
    env: dict[str, str] = Field(default_factory=dict)
    expect_exit_codes: list[int] = Field(default_factory=lambda: [0])

    @field_validator("cmd")
    @classmethod
    def _non_empty_cmd(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("cmd must be a non-empty string")
        return v

    @property
    def label(self) -> str:
        return self.name or self.cmd.split()[0]
