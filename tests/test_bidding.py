from __future__ import annotations

import pytest
from market_agent.bidding import BidPlacementEngine
from market_agent.categorize import KeywordCategorizer
from market_agent.config import BidStrategy, RunningConfig
from market_agent.errors import TransportError
from market_agent.ledger import InMemoryJournal
from market_agent.schemas import AgentState, EventType

from tests.helpers import FakeMarketplace, RecordingSleep, make_job, make_tracked


def _engine(client: FakeMarketplace, journal: InMemoryJournal, sleep=None) -> BidPlacementEngine:
    return BidPlacementEngine(
        client=client,
        categorizer=KeywordCategorizer(),
        journal=journal,
        sleep=sleep or RecordingSleep(),
    )


def test_aggressive_bid_on_smart_contract_job() -> None:
    client = FakeMarketplace()
    client.jobs = [make_job("J1", budget_amount=10.0)]
    journal = InMemoryJournal()
    state = AgentState()

    placed = _engine(client, journal).run(state, RunningConfig(bid_strategy=BidStrategy.AGGRESSIVE))

    assert [p.job_id for p in placed] == ["J1"]
    assert placed[0].amount == 3.75
    assert placed[0].category == "smart-contract"
    assert client.calls[-1] == ("place_bid", ("J1", 3.75))
    assert state.has_bid_on("J1")
    assert state.bids_placed == 1
    assert [b.job_id for b in state.pending_bids] == ["J1"]
    assert journal.of_type(EventType.BID_PLACED)[0].payload["amount"] == 3.75


def test_filters_skip_seen_competition_cheap_and_low_quality_jobs() -> None:
    client = FakeMarketplace()
    client.jobs = [
        make_job("seen"),
        make_job("contest", job_type="competition"),
        make_job("cheap", budget_amount=0.05),
        make_job("crowded", title="Logo", description="Design a logo", budget_amount=1.0, bid_count=40),
        make_job("ok"),
    ]
    state = AgentState()
    state.mark_bid("seen")

    biddable = _engine(client, InMemoryJournal()).find_biddable_jobs(state, RunningConfig())

    assert [j.job_id for j in biddable] == ["ok"]


def test_listing_failure_yields_nothing() -> None:
    client = FakeMarketplace()
    client.jobs = [make_job("J1")]
    client.list_jobs_status = 503
    assert _engine(client, InMemoryJournal()).find_biddable_jobs(AgentState(), RunningConfig()) == []


def test_rejected_bid_is_still_marked_and_not_pending() -> None:
    client = FakeMarketplace()
    client.place_status = 422
    journal = InMemoryJournal()
    state = AgentState()

    result = _engine(client, journal).place_bid(state, make_job("J1"), RunningConfig())

    assert result is None
    assert state.has_bid_on("J1")
    assert state.pending_bids == []
    assert state.bids_placed == 0
    assert journal.of_type(EventType.BID_FAILED)[0].payload["status"] == 422


def test_second_bid_on_same_job_is_refused() -> None:
    client = FakeMarketplace()
    engine = _engine(client, InMemoryJournal())
    state = AgentState()
    engine.place_bid(state, make_job("J1"), RunningConfig())

    with pytest.raises(ValueError, match="already bid"):
        engine.place_bid(state, make_job("J1"), RunningConfig())
    assert client.count("place_bid") == 1


def test_transport_error_marks_job_and_stops_bidding() -> None:
    client = FakeMarketplace()
    client.jobs = [make_job("J1"), make_job("J2")]
    client.place_errors["J1"] = TransportError("POST /jobs/J1/bids failed: reset")
    journal = InMemoryJournal()
    state = AgentState()

    placed = _engine(client, journal).run(state, RunningConfig())

    assert placed == []
    assert state.has_bid_on("J1")
    assert not state.has_bid_on("J2")
    assert client.count("place_bid") == 1
    assert journal.of_type(EventType.BID_FAILED)[0].job_id == "J1"


def test_no_bids_at_capacity() -> None:
    client = FakeMarketplace()
    client.jobs = [make_job("J9")]
    state = AgentState(active_jobs=[make_tracked("J1"), make_tracked("J2")])

    placed = _engine(client, InMemoryJournal()).run(state, RunningConfig(max_concurrent=2))

    assert placed == []
    assert client.count("list_open_jobs") == 0


def test_bids_are_spaced_by_delay() -> None:
    client = FakeMarketplace()
    client.jobs = [make_job("J1"), make_job("J2"), make_job("J3")]
    sleep = RecordingSleep()

    _engine(client, InMemoryJournal(), sleep).run(AgentState(), RunningConfig(bid_delay_seconds=2.0))

    assert sleep.calls == [2.0, 2.0]


def test_duplicate_bid_conflict_is_not_a_failure() -> None:
    client = FakeMarketplace()
    client.place_status = 409
    journal = InMemoryJournal()
    state = AgentState()

    result = _engine(client, journal).place_bid(state, make_job("J1"), RunningConfig())

    assert result is None
    assert state.has_bid_on("J1")
    assert state.bids_placed == 0
    assert journal.of_type(EventType.BID_FAILED) == []
    assert journal.of_type(EventType.BID_DUPLICATE)[0].payload["status"] == 409
