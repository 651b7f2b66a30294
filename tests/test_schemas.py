from __future__ import annotations

from datetime import UTC, datetime

import pytest
from market_agent.errors import StateInvariantError
from market_agent.schemas import AgentState, Bid, Job, JobDetail, Message, PendingBid, TrackedStatus

from tests.helpers import make_tracked


def test_job_accepts_wire_aliases_and_string_budget() -> None:
    job = Job.model_validate(
        {"id": "J1", "title": None, "budget_amount": "2.50", "bid_count": None, "extra": 1}
    )
    assert job.job_id == "J1"
    assert job.title == ""
    assert job.budget_amount == 2.5
    assert job.bid_count == 0

    assert Job.model_validate({"id": "J2", "budget_amount": ""}).budget_amount is None


def test_bid_and_message_coercion() -> None:
    bid = Bid.model_validate({"id": "B1", "job_id": "J1", "amount": "1.25", "status": "accepted"})
    assert (bid.bid_id, bid.amount) == ("B1", 1.25)

    msg = Message.model_validate({"body": None, "sender_agent_id": "req-1"})
    assert msg.body == ""
    assert msg.sender == "req-1"


def test_pick_assignment_prefers_known_id_then_in_progress() -> None:
    detail = JobDetail.model_validate(
        {
            "id": "J1",
            "my_assignments": [
                {"id": "A1", "status": "submitted"},
                {"id": "A2", "status": "in_progress"},
            ],
        }
    )
    assert detail.pick_assignment(assignment_id="A1").assignment_id == "A1"
    assert detail.pick_assignment().assignment_id == "A2"
    assert detail.pick_assignment(assignment_id="missing").assignment_id == "A2"
    assert JobDetail.model_validate({"id": "J2", "my_assignments": None}).pick_assignment() is None


def test_state_moves_keep_collections_disjoint() -> None:
    state = AgentState()
    job = make_tracked("J1")
    state.active_jobs.append(job)

    state.move_to_delivered(job)
    state.move_to_delivered(job)
    assert state.active_jobs == []
    assert [j.job_id for j in state.delivered_jobs] == ["J1"]

    state.move_to_active(job)
    assert [j.job_id for j in state.active_jobs] == ["J1"]
    assert state.delivered_jobs == []

    state.move_to_delivered(job)
    job.status = TrackedStatus.PAID
    state.move_to_paid(job)
    assert state.is_paid("J1")
    assert state.delivered_jobs == []
    state.check_disjoint()


def test_check_disjoint_rejects_job_in_two_collections() -> None:
    state = AgentState()
    state.pending_bids.append(
        PendingBid(job_id="J1", amount=1.0, placed_at=datetime.now(tz=UTC))
    )
    state.active_jobs.append(make_tracked("J1"))
    with pytest.raises(StateInvariantError, match="J1"):
        state.check_disjoint()


def test_mark_bid_is_idempotent_and_reset_clears() -> None:
    state = AgentState()
    state.mark_bid("J1")
    state.mark_bid("J1")
    assert state.already_bid_job_ids == ["J1"]
    assert state.has_bid_on("J1")
    state.reset_bids()
    assert not state.has_bid_on("J1")


def test_tracked_job_as_job_carries_budget_and_tags() -> None:
    job = make_tracked("J1", amount=3.0, tags=["rust"]).as_job()
    assert job.job_id == "J1"
    assert job.budget_amount == 3.0
    assert job.tags == ["rust"]
