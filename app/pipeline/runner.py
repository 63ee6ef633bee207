"""Checkpointed step execution for one pipeline run.

Each named step records its output under (run_handle, step_name). A resumed run finds the
checkpoint and returns the stored output instead of executing the step again, so completed
analysis work is never repeated after a restart.
"""

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from functools import lru_cache
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from pydantic import TypeAdapter
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

if TYPE_CHECKING:
    from app.core.config import Settings
    from app.pipeline.gateway import StoreGateway

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StagePolicy:
    """Retry and timeout policy applied to one analysis stage."""

    retries: int = 2
    delay_seconds: float = 5.0
    timeout_seconds: float = 120.0

    @property
    def max_attempts(self) -> int:
        return self.retries + 1

    @classmethod
    def from_settings(cls, settings: "Settings", long_running: bool = False) -> "StagePolicy":
        timeout = (
            settings.PIPELINE_LONG_STAGE_TIMEOUT_SEC
            if long_running
            else settings.PIPELINE_STAGE_TIMEOUT_SEC
        )
        return cls(
            retries=settings.PIPELINE_STAGE_RETRIES,
            delay_seconds=settings.PIPELINE_RETRY_DELAY_SEC,
            timeout_seconds=timeout,
        )


class StageTimeoutError(Exception):
    """One attempt of a stage ran past its timeout."""

    def __init__(self, stage: str, timeout_seconds: float) -> None:
        self.stage = stage
        self.message = f"Stage {stage!r} timed out after {timeout_seconds:g}s"
        super().__init__(self.message)


class StageFailedError(Exception):
    """A stage exhausted its retries; the review fails with this message."""

    def __init__(self, stage: str, message: str, cause: BaseException | None = None) -> None:
        self.stage = stage
        self.message = message
        self.cause = cause
        super().__init__(f"{stage}: {message}")


@lru_cache(maxsize=None)
def _adapter(result_type: Any) -> TypeAdapter:
    return TypeAdapter(result_type)


def encode_output(value: Any, result_type: Any | None) -> Any:
    if result_type is None:
        return value
    return _adapter(result_type).dump_python(value, mode="json")


def decode_output(stored: Any, result_type: Any | None) -> Any:
    if result_type is None:
        return stored
    return _adapter(result_type).validate_python(stored)


class StageRunner:
    """Runs the steps of one run handle against the checkpoint store."""

    def __init__(self, gateway: "StoreGateway", run_handle: str) -> None:
        self._gateway = gateway
        self._run_handle = run_handle

    @property
    def run_handle(self) -> str:
        return self._run_handle

    def has_completed(self, step_name: str) -> bool:
        """Blocking store read; call from a worker thread when on the event loop."""
        found, _ = self._gateway.load_checkpoint(self._run_handle, step_name)
        return found

    async def _load(self, step_name: str) -> tuple[bool, Any]:
        return await asyncio.to_thread(self._gateway.load_checkpoint, self._run_handle, step_name)

    async def _save(self, step_name: str, output: Any) -> Any:
        return await asyncio.to_thread(self._gateway.save_checkpoint, self._run_handle, step_name, output)

    async def step(
        self,
        step_name: str,
        fn: Callable[[], Any],
        result_type: Any | None = None,
    ) -> Any:
        """
        Execute fn once per run handle and record its output.

        fn may be sync or async; a sync fn runs in a worker thread so store writes never block
        the event loop. Not retried: use for store writes and bookkeeping whose
        failure should fail the review directly.
        """
        found, stored = await self._load(step_name)
        if found:
            logger.debug("Step replayed from checkpoint", extra={"run_handle": self._run_handle, "step": step_name})
            return decode_output(stored, result_type)

        if inspect.iscoroutinefunction(fn):
            result = await fn()
        else:
            result = await asyncio.to_thread(fn)
        stored = await self._save(step_name, encode_output(result, result_type))
        return decode_output(stored, result_type)

    async def run_stage(
        self,
        stage: str,
        fn: Callable[[], Awaitable[Any]],
        result_type: Any,
        policy: StagePolicy,
    ) -> Any:
        """
        Execute an analysis stage with retries and a per-attempt timeout, then checkpoint it.

        Raises:
            StageFailedError: when every attempt failed.
        """
        found, stored = await self._load(stage)
        if found:
            logger.info("Stage replayed from checkpoint", extra={"run_handle": self._run_handle, "stage": stage})
            return decode_output(stored, result_type)

        async def attempt_once() -> Any:
            try:
                return await asyncio.wait_for(fn(), timeout=policy.timeout_seconds)
            except asyncio.TimeoutError as e:
                raise StageTimeoutError(stage, policy.timeout_seconds) from e

        start = time.perf_counter()
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(policy.max_attempts),
                wait=wait_exponential(multiplier=policy.delay_seconds, max=max(policy.delay_seconds * 4, 0)),
                retry=retry_if_exception_type(Exception),
                before_sleep=before_sleep_log(logger, logging.WARNING),
                reraise=True,
            ):
                with attempt:
                    result = await attempt_once()
        except Exception as e:
            message = getattr(e, "message", None) or str(e) or type(e).__name__
            logger.error(
                "Stage failed after retries",
                extra={
                    "run_handle": self._run_handle,
                    "stage": stage,
                    "attempts": policy.max_attempts,
                    "error": message,
                },
            )
            raise StageFailedError(stage, message, cause=e) from e

        logger.info(
            "Stage completed",
            extra={
                "run_handle": self._run_handle,
                "stage": stage,
                "latency_ms": round((time.perf_counter() - start) * 1000),
            },
        )
        stored = await self._save(stage, encode_output(result, result_type))
        return decode_output(stored, result_type)
