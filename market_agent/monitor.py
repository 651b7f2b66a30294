from __future__ import annotations

import logging

from market_agent.client import Marketplace
from market_agent.errors import TransportError
from market_agent.ledger import Journal
from market_agent.schemas import (
    AgentState,
    AssignmentStatus,
    Bid,
    BidStatus,
    EventType,
    JobDetail,
    TrackedJob,
    TrackedStatus,
)

logger = logging.getLogger(__name__)

WORKING_MESSAGE = (
    'Work started on "{title}". I will deliver the full source code and documentation '
    "as a public GitHub Gist once it is complete."
)


class AwardMonitor:
    """Turns accepted bids into tracked jobs and notices work sent back for changes."""

    def __init__(self, *, client: Marketplace, journal: Journal) -> None:
        self._client = client
        self._journal = journal

    def _detail(self, job_id: str) -> JobDetail | None:
        res = self._client.get_job_detail(job_id)
        if res.status != 200 or not isinstance(res.data, JobDetail):
            logger.warning("job detail for %s unavailable (HTTP %s)", job_id, res.status)
            return None
        return res.data

    def check_bids(self, state: AgentState) -> list[TrackedJob]:
        res = self._client.list_my_bids()
        if res.status != 200:
            logger.warning("bid listing failed (HTTP %s)", res.status)
            return []

        awarded: list[TrackedJob] = []
        tracked = state.tracked_ids()
        for bid in res.data:
            if bid.status == BidStatus.REJECTED.value:
                if state.drop_pending(bid.job_id):
                    state.bids_rejected += 1
                    logger.info("bid on %s rejected", bid.job_id)
                    self._journal.append(
                        EventType.BID_REJECTED, cycle=state.cycle_count, job_id=bid.job_id
                    )
                continue
            if bid.status != BidStatus.ACCEPTED.value:
                continue
            if bid.job_id in tracked:
                state.drop_pending(bid.job_id)
                continue

            try:
                job = self._track_award(state, bid)
            except TransportError as e:
                logger.warning("could not fetch awarded job %s: %s", bid.job_id, e)
                continue
            except Exception as e:
                logger.exception("could not track awarded job %s", bid.job_id)
                self._journal.append(
                    EventType.JOB_ERROR,
                    cycle=state.cycle_count,
                    job_id=bid.job_id,
                    payload={"stage": "award", "error": str(e)},
                )
                continue
            tracked.add(job.job_id)
            awarded.append(job)
        return awarded

    def _track_award(self, state: AgentState, bid: Bid) -> TrackedJob:
        detail = self._detail(bid.job_id)
        assignment = detail.pick_assignment() if detail is not None else None
        job = TrackedJob(
            job_id=bid.job_id,
            bid_id=bid.bid_id,
            amount=bid.amount,
            budget_amount=detail.budget_amount if detail is not None else None,
            title=(detail.title if detail is not None and detail.title else "(unknown)"),
            description=detail.description if detail is not None else "",
            tags=list(detail.tags) if detail is not None else [],
            status=TrackedStatus.AWARDED,
            assignment_id=assignment.assignment_id if assignment else None,
            assignment_status=assignment.status if assignment else None,
            escrow_amount=assignment.escrow_amount if assignment else None,
        )
        state.drop_pending(job.job_id)
        state.active_jobs.append(job)
        state.bids_won += 1
        logger.info("bid accepted: %r (%s)", job.title, job.job_id)
        self._journal.append(
            EventType.BID_ACCEPTED,
            cycle=state.cycle_count,
            job_id=job.job_id,
            payload={"amount": job.amount, "assignment_id": job.assignment_id},
        )
        return job

    def check_for_request_changes(self, state: AgentState) -> list[TrackedJob]:
        reopened: list[TrackedJob] = []
        for job in list(state.delivered_jobs):
            try:
                if self._check_one(state, job):
                    reopened.append(job)
            except Exception as e:
                logger.exception("change-request check failed for %s", job.job_id)
                self._journal.append(
                    EventType.JOB_ERROR,
                    cycle=state.cycle_count,
                    job_id=job.job_id,
                    payload={"stage": "request_changes", "error": str(e)},
                )
        return reopened

    def _check_one(self, state: AgentState, job: TrackedJob) -> bool:
        detail = self._detail(job.job_id)
        if detail is None:
            return False
        assignment = detail.pick_assignment(assignment_id=job.assignment_id)
        if assignment is None:
            return False

        if assignment.status == AssignmentStatus.IN_PROGRESS.value:
            job.status = TrackedStatus.AWARDED
            job.message_sent = True
            job.assignment_id = assignment.assignment_id
            job.assignment_status = assignment.status
            job.changes_feedback = self._latest_feedback(assignment.assignment_id)
            state.move_to_active(job)
            logger.info("changes requested on %r; reworking", job.title)
            self._journal.append(
                EventType.CHANGES_REQUESTED,
                cycle=state.cycle_count,
                job_id=job.job_id,
                payload={"feedback": (job.changes_feedback or "")[:500]},
            )
            return True

        if assignment.status == AssignmentStatus.DISPUTED.value:
            if job.assignment_status != AssignmentStatus.DISPUTED.value:
                logger.warning("assignment for %r disputed by requester", job.title)
                self._journal.append(
                    EventType.JOB_DISPUTED, cycle=state.cycle_count, job_id=job.job_id
                )
            job.assignment_status = assignment.status
        return False

    def _latest_feedback(self, assignment_id: str) -> str | None:
        try:
            res = self._client.get_assignment_messages(assignment_id)
        except TransportError as e:
            logger.warning("could not read feedback for assignment %s: %s", assignment_id, e)
            return None
        if res.status != 200 or not res.data:
            return None
        return res.data[-1].body or None

    def send_working_message(self, job: TrackedJob) -> bool:
        """Announce the start of work once per job; the assignment id is discovered if missing."""
        if job.message_sent:
            return False
        if not job.assignment_id:
            detail = self._detail(job.job_id)
            assignment = detail.pick_assignment() if detail is not None else None
            if assignment is not None:
                job.assignment_id = assignment.assignment_id
                job.assignment_status = assignment.status
        if not job.assignment_id:
            logger.warning("no assignment found for job %s; working notice not sent", job.job_id)
            return False

        res = self._client.send_assignment_message(
            job.assignment_id, WORKING_MESSAGE.format(title=job.title)
        )
        if not res.ok:
            logger.warning("working notice for %s failed (HTTP %s)", job.job_id, res.status)
            return False
        job.message_sent = True
        logger.info("sent working notice to assignment %s", job.assignment_id)
        return True
