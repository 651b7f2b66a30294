from __future__ import annotations

import logging
from datetime import UTC, datetime

from market_agent.client import Marketplace
from market_agent.errors import TransportError
from market_agent.ledger import Journal
from market_agent.schemas import (
    AgentState,
    AssignmentStatus,
    Deliverable,
    EventType,
    JobDetail,
    JobStatus,
    TrackedJob,
    TrackedStatus,
)

logger = logging.getLogger(__name__)

DELIVERY_MESSAGE = "Delivery complete. The implementation has been submitted: {url}"


def is_paid(detail: JobDetail, *, assignment_id: str | None) -> bool:
    if detail.status == JobStatus.COMPLETED.value:
        return True
    assignment = detail.pick_assignment(assignment_id=assignment_id)
    if assignment is not None and assignment.status == AssignmentStatus.ACCEPTED.value:
        return True
    return detail.status == JobStatus.CLOSED.value and bool(detail.worker_agent_id)


class SubmissionReconciler:
    """Submits deliverables and settles delivered jobs once the marketplace reports payment."""

    def __init__(self, *, client: Marketplace, journal: Journal) -> None:
        self._client = client
        self._journal = journal

    def submit(self, state: AgentState, job: TrackedJob, deliverable: Deliverable) -> bool:
        res = self._client.submit_deliverable(job.job_id, url=deliverable.url, hash=deliverable.hash)
        if not (res.ok or res.conflict):
            logger.error("delivery of %s failed (HTTP %s): %s", job.job_id, res.status, res.data)
            self._journal.append(
                EventType.SUBMIT_FAILED,
                cycle=state.cycle_count,
                job_id=job.job_id,
                payload={"status": res.status, "url": deliverable.url},
            )
            return False

        if res.conflict:
            # The marketplace already holds a submission for this assignment.
            logger.warning("submission for %s already recorded (409); marking delivered", job.job_id)

        job.status = TrackedStatus.DELIVERED
        job.delivered_at = datetime.now(tz=UTC)
        job.deliverable_url = deliverable.url
        job.changes_feedback = None
        state.move_to_delivered(job)
        self._journal.append(
            EventType.JOB_SUBMITTED,
            cycle=state.cycle_count,
            job_id=job.job_id,
            payload={"status": res.status, "url": deliverable.url, "hash": deliverable.hash},
        )

        if res.ok and job.assignment_id:
            try:
                self._client.send_assignment_message(
                    job.assignment_id, DELIVERY_MESSAGE.format(url=deliverable.url)
                )
            except TransportError as e:
                logger.warning("delivery notice for %s not sent: %s", job.job_id, e)
        return True

    def check_payments(self, state: AgentState) -> list[TrackedJob]:
        paid: list[TrackedJob] = []
        for job in list(state.delivered_jobs):
            try:
                if self._check_one(state, job):
                    paid.append(job)
            except Exception as e:
                logger.exception("payment check failed for %s", job.job_id)
                self._journal.append(
                    EventType.JOB_ERROR,
                    cycle=state.cycle_count,
                    job_id=job.job_id,
                    payload={"stage": "payment", "error": str(e)},
                )
        return paid

    def _check_one(self, state: AgentState, job: TrackedJob) -> bool:
        res = self._client.get_job_detail(job.job_id)
        if res.status != 200 or not isinstance(res.data, JobDetail):
            return False
        detail: JobDetail = res.data

        if is_paid(detail, assignment_id=job.assignment_id):
            if state.is_paid(job.job_id):
                state.drop_delivered(job.job_id)
                return False
            job.status = TrackedStatus.PAID
            job.paid_at = datetime.now(tz=UTC)
            state.total_earnings = round(state.total_earnings + job.amount, 8)
            state.move_to_paid(job)
            logger.info("paid %.2f for %r", job.amount, job.title)
            self._journal.append(
                EventType.JOB_PAID,
                cycle=state.cycle_count,
                job_id=job.job_id,
                payload={"amount": job.amount, "total_earnings": state.total_earnings},
            )
            return True

        if detail.status == JobStatus.EXPIRED.value:
            state.drop_delivered(job.job_id)
            logger.info("job %r expired; no longer tracked", job.title)
            self._journal.append(EventType.JOB_EXPIRED, cycle=state.cycle_count, job_id=job.job_id)
        return False
