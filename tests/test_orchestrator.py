from __future__ import annotations

from market_agent.config import RunningConfig
from market_agent.ledger import InMemoryJournal
from market_agent.schemas import AgentState, EventType, TrackedStatus

from tests.helpers import (
    GIST_URL,
    FakeMarketplace,
    RecordingSleep,
    StaticPreflight,
    make_detail,
    make_job,
    make_orchestrator,
)


class _ExplodingBidder:
    def __init__(self) -> None:
        self.calls = 0

    def run(self, state, config):
        self.calls += 1
        raise RuntimeError("marketplace returned garbage")


def test_job_lifecycle_from_bid_to_payment(tmp_path) -> None:
    client = FakeMarketplace()
    client.jobs = [make_job("J1", budget_amount=10.0)]
    orchestrator, store, journal = make_orchestrator(tmp_path, client)
    config = RunningConfig()
    state = AgentState()

    orchestrator.run_cycle(state, config)
    assert [b.job_id for b in state.pending_bids] == ["J1"]
    state.check_disjoint()

    client.accept_bid("J1")
    orchestrator.run_cycle(state, config)
    assert state.pending_bids == []
    assert state.active_jobs == []
    delivered = state.delivered_jobs[0]
    assert delivered.deliverable_url == GIST_URL
    assert delivered.amount == 3.75
    assert client.submissions[0][0] == "J1"
    # working notice then delivery notice
    assert len(client.sent_messages) == 2
    state.check_disjoint()

    client.details["J1"] = make_detail("J1", status="completed", assignment_status="accepted")
    orchestrator.run_cycle(state, config)
    orchestrator.run_cycle(state, config)

    assert [j.job_id for j in state.paid_jobs] == ["J1"]
    assert state.paid_jobs[0].status == TrackedStatus.PAID
    assert state.total_earnings == 3.75
    assert state.cycle_count == 4
    assert client.count("place_bid") == 1
    assert len(client.submissions) == 1
    state.check_disjoint()
    store.save_state(state)
    journal.verify_chain()


def test_changes_requested_job_is_reworked_and_resubmitted(tmp_path) -> None:
    client = FakeMarketplace()
    client.jobs = [make_job("J1")]
    orchestrator, _, journal = make_orchestrator(tmp_path, client)
    config = RunningConfig()
    state = AgentState()

    orchestrator.run_cycle(state, config)
    client.accept_bid("J1")
    orchestrator.run_cycle(state, config)
    assert [j.job_id for j in state.delivered_jobs] == ["J1"]

    client.details["J1"] = make_detail("J1", assignment_status="in_progress")
    orchestrator.run_cycle(state, config)

    assert len(journal.of_type(EventType.CHANGES_REQUESTED)) == 1
    assert len(client.submissions) == 2
    assert [j.job_id for j in state.delivered_jobs] == ["J1"]
    # only the first delivery announced work start
    working = [m for _, m in client.sent_messages if m.startswith("Work started")]
    assert len(working) == 1


def test_unreachable_deliverable_is_not_submitted(tmp_path) -> None:
    client = FakeMarketplace()
    client.jobs = [make_job("J1")]
    preflight = StaticPreflight(ok=False)
    orchestrator, _, journal = make_orchestrator(tmp_path, client, preflight=preflight)
    config = RunningConfig()
    state = AgentState()

    orchestrator.run_cycle(state, config)
    client.accept_bid("J1")
    orchestrator.run_cycle(state, config)

    assert preflight.checked == [GIST_URL]
    assert client.submissions == []
    assert [j.job_id for j in state.active_jobs] == ["J1"]
    assert state.delivered_jobs == []
    assert len(journal.of_type(EventType.PREFLIGHT_FAILED)) == 1


def test_run_once_saves_state(tmp_path) -> None:
    client = FakeMarketplace()
    client.jobs = [make_job("J1")]
    orchestrator, store, _ = make_orchestrator(tmp_path, client)

    state = orchestrator.run(once=True)

    assert state.cycle_count == 1
    saved = store.load_state()
    assert saved.cycle_count == 1
    assert saved.already_bid_job_ids == ["J1"]
    assert saved.started_at is not None


def test_stopped_agent_does_not_cycle(tmp_path) -> None:
    client = FakeMarketplace()
    orchestrator, store, _ = make_orchestrator(tmp_path, client)
    store.set_running(False)

    state = orchestrator.run()

    assert state.cycle_count == 0
    assert client.calls == []


def test_consecutive_errors_trigger_cooldown(tmp_path) -> None:
    client = FakeMarketplace()
    holder: dict = {}

    def stop_after_cooldown(calls: list[float]) -> None:
        if len(calls) == 5:
            holder["orchestrator"].request_stop()

    sleep = RecordingSleep(on_call=stop_after_cooldown)
    bidder = _ExplodingBidder()
    orchestrator, store, journal = make_orchestrator(tmp_path, client, sleep=sleep, bidder=bidder)
    holder["orchestrator"] = orchestrator
    store.save_config(RunningConfig(running=True))

    state = orchestrator.run()

    assert bidder.calls == 5
    assert sleep.calls == [10.0, 10.0, 10.0, 10.0, 300.0]
    assert state.consecutive_errors == 0
    assert len(journal.of_type(EventType.CYCLE_FAILED)) == 5
    assert len(journal.of_type(EventType.COOLDOWN)) == 1
    assert store.load_state().consecutive_errors == 0


def test_successful_cycle_resets_error_counter(tmp_path) -> None:
    client = FakeMarketplace()
    holder: dict = {}
    sleep = RecordingSleep(on_call=lambda calls: holder["orchestrator"].request_stop())
    orchestrator, store, _ = make_orchestrator(tmp_path, client, sleep=sleep)
    holder["orchestrator"] = orchestrator
    store.save_config(RunningConfig(running=True, poll_interval=60.0))
    store.save_state(AgentState(consecutive_errors=3))

    state = orchestrator.run()

    assert state.consecutive_errors == 0
    assert sleep.calls == [60.0]


def test_job_failure_is_isolated_from_the_cycle(tmp_path) -> None:
    client = FakeMarketplace()
    client.jobs = [make_job("J1"), make_job("J2")]

    class FlakyPreflight(StaticPreflight):
        def verify(self, url: str) -> bool:
            self.checked.append(url)
            if len(self.checked) == 1:
                raise OSError("socket closed")
            return True

    preflight = FlakyPreflight()
    orchestrator, _, journal = make_orchestrator(tmp_path, client, preflight=preflight)
    config = RunningConfig()
    state = AgentState()

    orchestrator.run_cycle(state, config)
    client.accept_bid("J1")
    client.accept_bid("J2")
    orchestrator.run_cycle(state, config)

    assert [j.job_id for j in state.active_jobs] == ["J1"]
    assert [j.job_id for j in state.delivered_jobs] == ["J2"]
    errors = journal.of_type(EventType.JOB_ERROR)
    assert [e.job_id for e in errors] == ["J1"]
    assert "socket closed" in errors[0].payload["error"]


def test_unreadable_config_keeps_last_good_settings(tmp_path) -> None:
    client = FakeMarketplace()
    holder: dict = {}

    def break_config_then_stop(calls: list[float]) -> None:
        if len(calls) == 1:
            holder["store"].config_path.write_text('{"poll_interval": "soon"', encoding="utf-8")
        else:
            holder["orchestrator"].request_stop()

    sleep = RecordingSleep(on_call=break_config_then_stop)
    orchestrator, store, journal = make_orchestrator(tmp_path, client, sleep=sleep)
    holder.update(orchestrator=orchestrator, store=store)
    store.save_config(RunningConfig(running=True, poll_interval=7))

    state = orchestrator.run()

    assert state.cycle_count == 2
    assert sleep.calls == [7.0, 7.0]
    assert len(journal.of_type(EventType.CONFIG_INVALID)) == 1
    assert journal.of_type(EventType.CYCLE_FAILED) == []


def test_failed_save_counts_as_cycle_error(tmp_path) -> None:
    client = FakeMarketplace()
    holder: dict = {}
    sleep = RecordingSleep(on_call=lambda calls: holder["orchestrator"].request_stop())
    orchestrator, store, journal = make_orchestrator(tmp_path, client, sleep=sleep)
    holder["orchestrator"] = orchestrator
    store.save_config(RunningConfig(running=True))

    def disk_full(state: AgentState) -> None:
        raise OSError(28, "No space left on device")

    store.save_state = disk_full  # type: ignore[method-assign]

    state = orchestrator.run()

    assert state.consecutive_errors == 1
    assert sleep.calls == [10.0]
    failure = journal.of_type(EventType.CYCLE_FAILED)[0]
    assert failure.payload["stage"] == "save"
