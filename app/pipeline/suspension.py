"""Suspension point for the approval gate.

A waiting run holds no compute: it awaits a future registered under its run handle. The
event itself is persisted before the future is resolved, so a run that resumes in a fresh
process (or whose event was recorded by another process) finds it on the next re-check.
"""

import asyncio
import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from app.schemas.pipeline import ApprovalDecision, ApprovalEvent

if TYPE_CHECKING:
    from app.pipeline.gateway import StoreGateway

logger = logging.getLogger(__name__)


class ApprovalRegistry:
    """In-memory continuations keyed by run handle."""

    def __init__(self) -> None:
        self._waiters: dict[str, asyncio.Future[ApprovalEvent]] = {}

    def register(self, run_handle: str) -> asyncio.Future[ApprovalEvent]:
        future = self._waiters.get(run_handle)
        if future is None or future.done():
            future = asyncio.get_running_loop().create_future()
            self._waiters[run_handle] = future
        return future

    def discard(self, run_handle: str, future: asyncio.Future[ApprovalEvent]) -> None:
        if self._waiters.get(run_handle) is future:
            del self._waiters[run_handle]

    def is_waiting(self, run_handle: str) -> bool:
        future = self._waiters.get(run_handle)
        return future is not None and not future.done()

    def notify(self, run_handle: str, event: ApprovalEvent) -> bool:
        """Wake the waiter for run_handle, if any. Returns True when a waiter was resolved."""
        future = self._waiters.get(run_handle)
        if future is None or future.done():
            return False
        future.set_result(event)
        return True


def decision_from_event(event: ApprovalEvent) -> ApprovalDecision:
    return ApprovalDecision(
        approved=event.approved,
        finding_ids=list(event.finding_ids) if event.approved else [],
        outcome="approved" if event.approved else "rejected",
    )


def timed_out_decision() -> ApprovalDecision:
    return ApprovalDecision(approved=False, finding_ids=[], outcome="timed_out")


async def wait_for_approval(
    gateway: "StoreGateway",
    registry: ApprovalRegistry,
    run_handle: str,
    deadline: datetime,
    poll_interval: float,
) -> ApprovalDecision:
    """
    Block until an approval event is recorded for run_handle or the deadline passes.

    The future is registered before the store is checked, so an event delivered between
    the check and the await still wakes this waiter. Store reads run in a worker thread.
    """
    while True:
        future = registry.register(run_handle)
        try:
            event = await asyncio.to_thread(gateway.load_approval_event, run_handle)
            if event is not None:
                return decision_from_event(event)

            remaining = (deadline - datetime.now(UTC)).total_seconds()
            if remaining <= 0:
                logger.info("Approval wait expired", extra={"run_handle": run_handle})
                return timed_out_decision()

            try:
                event = await asyncio.wait_for(
                    asyncio.shield(future), timeout=min(remaining, poll_interval)
                )
            except asyncio.TimeoutError:
                continue
            return decision_from_event(event)
        finally:
            registry.discard(run_handle, future)
