from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import UTC, datetime

from market_agent.categorize import Categorizer
from market_agent.client import Marketplace
from market_agent.config import RunningConfig
from market_agent.errors import TransportError
from market_agent.ledger import Journal
from market_agent.schemas import AgentState, EventType, Job, PendingBid

logger = logging.getLogger(__name__)


class BidPlacementEngine:
    """Discovers biddable jobs and places at most one priced bid per job."""

    def __init__(
        self,
        *,
        client: Marketplace,
        categorizer: Categorizer,
        journal: Journal,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._client = client
        self._categorizer = categorizer
        self._journal = journal
        self._sleep = sleep

    def find_biddable_jobs(self, state: AgentState, config: RunningConfig) -> list[Job]:
        res = self._client.list_open_jobs()
        if res.status != 200:
            logger.warning("job listing failed (HTTP %s)", res.status)
            return []

        jobs: list[Job] = res.data
        biddable: list[Job] = []
        for job in jobs:
            if state.has_bid_on(job.job_id):
                continue
            if job.job_type == "competition":
                continue
            if job.budget_amount is not None and job.budget_amount < config.min_budget:
                continue
            if self._categorizer.quality(job) < config.min_quality:
                continue
            biddable.append(job)

        logger.info("found %d open jobs, %d biddable", len(jobs), len(biddable))
        return biddable

    def place_bid(self, state: AgentState, job: Job, config: RunningConfig) -> PendingBid | None:
        if state.has_bid_on(job.job_id):
            raise ValueError(f"already bid on job {job.job_id}")

        category = self._categorizer.categorize(job)
        amount = self._categorizer.price(job, category, config.bid_strategy)
        proposal = self._categorizer.draft_proposal(job, category)
        logger.info("bidding %.2f on %r [%s]", amount, job.title, category)

        try:
            res = self._client.place_bid(
                job.job_id, amount=amount, eta_seconds=config.bid_eta_seconds, proposal=proposal
            )
        finally:
            # Recorded before anything else can fail so the job is never bid on twice.
            state.mark_bid(job.job_id)

        if res.conflict:
            # Our earlier bid stands; check_bids picks it up if it is accepted.
            logger.info("already bid on %s (HTTP 409); nothing to do", job.job_id)
            self._journal.append(
                EventType.BID_DUPLICATE,
                cycle=state.cycle_count,
                job_id=job.job_id,
                payload={"status": res.status, "amount": amount},
            )
            return None

        if not res.ok:
            logger.warning("bid on %s rejected by marketplace (HTTP %s)", job.job_id, res.status)
            self._journal.append(
                EventType.BID_FAILED,
                cycle=state.cycle_count,
                job_id=job.job_id,
                payload={"status": res.status, "amount": amount},
            )
            return None

        pending = PendingBid(
            job_id=job.job_id,
            amount=amount,
            title=job.title,
            category=category,
            placed_at=datetime.now(tz=UTC),
        )
        state.pending_bids.append(pending)
        state.bids_placed += 1
        self._journal.append(
            EventType.BID_PLACED,
            cycle=state.cycle_count,
            job_id=job.job_id,
            payload={"amount": amount, "category": category, "title": job.title},
        )
        return pending

    def run(self, state: AgentState, config: RunningConfig) -> list[PendingBid]:
        if len(state.active_jobs) >= config.max_concurrent:
            logger.info(
                "at capacity (%d active jobs, max %d); not bidding this cycle",
                len(state.active_jobs),
                config.max_concurrent,
            )
            return []

        placed: list[PendingBid] = []
        for i, job in enumerate(self.find_biddable_jobs(state, config)):
            if i > 0 and config.bid_delay_seconds > 0:
                self._sleep(config.bid_delay_seconds)
            try:
                pending = self.place_bid(state, job, config)
            except TransportError as e:
                logger.warning("bid on %s failed: %s; skipping remaining bids", job.job_id, e)
                self._journal.append(
                    EventType.BID_FAILED,
                    cycle=state.cycle_count,
                    job_id=job.job_id,
                    payload={"error": str(e)},
                )
                break
            if pending is not None:
                placed.append(pending)
        return placed
