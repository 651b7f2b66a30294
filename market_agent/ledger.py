"""Append-only, hash-chained journal of agent lifecycle events.

Every event stores the hash of its predecessor, so editing or dropping a line in
`events.jsonl` is caught by `verify_chain()`. The journal is an audit trail only;
`state.json` remains the source of truth for what the agent is tracking.
"""

from __future__ import annotations

import hashlib
import logging
import uuid
from collections.abc import Iterable, Iterator
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from pydantic import ValidationError

from market_agent.errors import ConfigError
from market_agent.jsonutil import stable_json_dumps
from market_agent.schemas import EventType, JournalEvent

logger = logging.getLogger(__name__)

_TAIL_READ_BYTES = 128 * 1024


@runtime_checkable
class Journal(Protocol):
    def append(
        self,
        event_type: EventType,
        *,
        cycle: int,
        job_id: str | None = ...,
        payload: dict[str, Any] | None = ...,
        ts: datetime | None = ...,
    ) -> JournalEvent: ...

    def iter_events(self) -> Iterator[JournalEvent]: ...

    def verify_chain(self) -> None: ...

    def __len__(self) -> int: ...


def event_digest(event: JournalEvent) -> str:
    """SHA-256 over every field of the event except its own hash."""
    body = event.model_dump(mode="json", exclude={"hash"})
    return hashlib.sha256(stable_json_dumps(body).encode("utf-8")).hexdigest()


def verify_events(events: Iterable[JournalEvent]) -> int:
    """Check links and digests in order; returns the number of events checked."""
    expected_prev: str | None = None
    count = 0
    for event in events:
        if event.prev_hash != expected_prev:
            raise ValueError(f"journal chain broken before event {event.event_id} (#{count + 1})")
        if event.hash != event_digest(event):
            raise ValueError(f"journal event {event.event_id} (#{count + 1}) was modified")
        expected_prev = event.hash
        count += 1
    return count


class _ChainedJournal:
    def __init__(self) -> None:
        self._head: str | None = None

    def append(
        self,
        event_type: EventType,
        *,
        cycle: int,
        job_id: str | None = None,
        payload: dict[str, Any] | None = None,
        ts: datetime | None = None,
    ) -> JournalEvent:
        draft = JournalEvent(
            event_id=uuid.uuid4().hex,
            prev_hash=self._head,
            hash="",
            ts=ts or datetime.now(tz=UTC),
            cycle=cycle,
            type=event_type,
            job_id=job_id,
            payload=dict(payload or {}),
        )
        event = draft.model_copy(update={"hash": event_digest(draft)})
        self._store(event)
        self._head = event.hash
        return event

    def _store(self, event: JournalEvent) -> None:
        raise NotImplementedError

    def iter_events(self) -> Iterator[JournalEvent]:
        raise NotImplementedError

    def verify_chain(self) -> None:
        verify_events(self.iter_events())

    def for_job(self, job_id: str) -> list[JournalEvent]:
        return [e for e in self.iter_events() if e.job_id == job_id]

    def tail(self, limit: int) -> list[JournalEvent]:
        if limit <= 0:
            return []
        return list(self.iter_events())[-limit:]


class EventJournal(_ChainedJournal):
    """One JSON event per line in a file that is only ever appended to."""

    def __init__(self, path: Path, *, read_only: bool = False) -> None:
        super().__init__()
        self._path = path
        self._read_only = read_only
        if not read_only:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._head = self._recover_head()

    @property
    def path(self) -> Path:
        return self._path

    def _store(self, event: JournalEvent) -> None:
        if self._read_only:
            raise PermissionError(f"journal {self._path} was opened read-only")
        with self._path.open("a", encoding="utf-8") as f:
            f.write(stable_json_dumps(event.model_dump(mode="json")) + "\n")

    def _lines(self) -> Iterator[str]:
        if not self._path.exists():
            return
        with self._path.open("r", encoding="utf-8") as f:
            for line in f:
                # A line without its newline is an append still in progress, or torn by a crash.
                if line.endswith("\n") and line.strip():
                    yield line

    def iter_events(self) -> Iterator[JournalEvent]:
        for line in self._lines():
            yield JournalEvent.model_validate_json(line)

    def __len__(self) -> int:
        return sum(1 for _ in self._lines())

    def _recover_head(self) -> str | None:
        """Hash of the last complete event; a line torn by a crash mid-append is cut off."""
        if not self._path.exists():
            return None
        with self._path.open("rb+") as f:
            size = f.seek(0, 2)
            base = max(size - _TAIL_READ_BYTES, 0)
            f.seek(base)
            body = f.read().rstrip(b"\r\n")
            if not body.strip():
                return None
            start = body.rfind(b"\n") + 1
            if size - base > len(body):
                try:
                    return JournalEvent.model_validate_json(body[start:]).hash
                except ValidationError:
                    pass
            logger.warning("cutting torn last line (%d bytes) from %s", size - base - start, self._path)
            f.truncate(base + start)

        previous = body[:start].rstrip(b"\r\n")
        if not previous.strip():
            return None
        try:
            return JournalEvent.model_validate_json(previous[previous.rfind(b"\n") + 1 :]).hash
        except ValidationError as e:
            raise ConfigError(f"event journal {self._path} is corrupt; move it aside to start a new one") from e


class InMemoryJournal(_ChainedJournal):
    """List-backed journal for tests."""

    def __init__(self) -> None:
        super().__init__()
        self._events: list[JournalEvent] = []

    def _store(self, event: JournalEvent) -> None:
        self._events.append(event)

    def iter_events(self) -> Iterator[JournalEvent]:
        for event in self._events:
            yield event.model_copy(deep=True)

    def of_type(self, event_type: EventType) -> list[JournalEvent]:
        return [e for e in self._events if e.type == event_type]

    def __len__(self) -> int:
        return len(self._events)
