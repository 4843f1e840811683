"""
Best-effort parallel fan-out with an explicit partial-failure policy.

Each call site states how many members must succeed and what happens to the
rest, instead of inlining thresholds around ``asyncio.gather``.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Awaitable, Sequence

import structlog
from pydantic import BaseModel, Field

log = structlog.get_logger()


class PartialFailure(str, Enum):
    LOG_AND_CONTINUE = "log_and_continue"
    ESCALATE = "escalate"


class BatchPolicy(BaseModel):
    """``min_success_count`` is capped at the batch size; an empty batch succeeds."""

    min_success_count: int = Field(default=1, ge=0)
    on_partial_failure: PartialFailure = PartialFailure.LOG_AND_CONTINUE

    model_config = {"frozen": True}


# Fail only when every member fails
BEST_EFFORT = BatchPolicy(min_success_count=1, on_partial_failure=PartialFailure.LOG_AND_CONTINUE)
# Any failure fails the batch
ALL_OR_ERROR = BatchPolicy(min_success_count=1, on_partial_failure=PartialFailure.ESCALATE)


class BatchOutcome:
    """Per-member results keyed by label, split into successes and failures."""

    def __init__(self) -> None:
        self.succeeded: dict[str, Any] = {}
        self.failed: dict[str, Exception] = {}

    @property
    def all_succeeded(self) -> bool:
        return not self.failed


async def run_batch(
    calls: Sequence[tuple[str, Awaitable[Any]]],
    policy: BatchPolicy,
    *,
    operation: str,
) -> BatchOutcome:
    """Await every call concurrently and apply ``policy`` to the outcome.

    Completion order is unspecified. Raises the first failure (in input order)
    when the policy is not met.
    """
    outcome = BatchOutcome()
    if not calls:
        return outcome

    labels = [label for label, _ in calls]
    results = await asyncio.gather(*(call for _, call in calls), return_exceptions=True)

    for label, result in zip(labels, results):
        if isinstance(result, Exception):
            outcome.failed[label] = result
        elif isinstance(result, BaseException):
            raise result
        else:
            outcome.succeeded[label] = result

    if outcome.all_succeeded:
        return outcome

    first_failure = next(iter(outcome.failed.values()))
    required = min(policy.min_success_count, len(calls))
    if len(outcome.succeeded) < required:
        log.error(
            "batch.failed",
            operation=operation,
            failed=list(outcome.failed),
            succeeded=len(outcome.succeeded),
            required=required,
        )
        raise first_failure

    if policy.on_partial_failure == PartialFailure.ESCALATE:
        log.error("batch.partial_failure_escalated", operation=operation, failed=list(outcome.failed))
        raise first_failure

    log.warning(
        "batch.partial_failure",
        operation=operation,
        failed=list(outcome.failed),
        succeeded=len(outcome.succeeded),
    )
    return outcome
