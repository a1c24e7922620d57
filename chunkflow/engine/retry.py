# chunkflow/engine/retry.py

from __future__ import annotations

import asyncio
import dataclasses
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, Tuple

from chunkflow.core.config import EngineConfig, config
from chunkflow.core.errors import ChunkFlowError, ExternalCallError, error_from_record
from chunkflow.core.state import ErrorRecord
from chunkflow.engine.capability import CapabilityRequest, CapabilityResponse, execute_capability, normalize_response

logger = logging.getLogger(__name__)

RetryPredicate = Callable[[ErrorRecord], bool]


def default_is_retryable(record: ErrorRecord) -> bool:
    return bool(record.retryable)


def backoff_delay_s(attempt_number: int, base_s: float, max_s: float) -> float:
    # attempt_number is 1-based failure count.
    if base_s <= 0:
        return 0.0
    delay = base_s * (2 ** max(0, attempt_number - 1))
    return min(delay, max_s)


class RetryPolicy:
    """Bounded retry with exponential backoff.

    Attempt counting lives on the stack of each ``call``, so independent
    invocations never share a retry budget.
    """

    def __init__(
        self,
        max_retries: Optional[int] = None,
        *,
        backoff_base_s: Optional[float] = None,
        backoff_max_s: Optional[float] = None,
        is_retryable: Optional[RetryPredicate] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ) -> None:
        engine = config.engine
        self.max_retries = max(0, engine.max_retries if max_retries is None else max_retries)
        self.backoff_base_s = engine.backoff_base_s if backoff_base_s is None else max(0.0, backoff_base_s)
        self.backoff_max_s = engine.backoff_max_s if backoff_max_s is None else max(0.0, backoff_max_s)
        self.is_retryable = is_retryable or default_is_retryable
        self._sleep = sleep or asyncio.sleep

    @classmethod
    def from_config(cls, engine: Optional[EngineConfig] = None, **overrides: Any) -> "RetryPolicy":
        engine = engine or config.engine
        kwargs: dict[str, Any] = {
            "max_retries": engine.max_retries,
            "backoff_base_s": engine.backoff_base_s,
            "backoff_max_s": engine.backoff_max_s,
        }
        kwargs.update(overrides)
        return cls(**kwargs)

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def backoff_delay_s(self, attempt_number: int) -> float:
        return backoff_delay_s(attempt_number, self.backoff_base_s, self.backoff_max_s)

    async def call(self, fn: Callable[[], Awaitable[Any]], *, label: str = "call") -> Tuple[Any, int]:
        """Runs ``fn`` until it succeeds or fails for good; returns (value, attempts).

        The last ChunkFlowError is re-raised as is, with ``attempt`` set to the
        number of attempts made. Other exceptions are not retried.
        """
        attempts = self.max_attempts
        for attempt in range(1, attempts + 1):
            try:
                return await fn(), attempt
            except ChunkFlowError as exc:
                exc.attempt = attempt
                retryable = self.is_retryable(exc.to_record(attempt=attempt))
                if retryable and attempt < attempts:
                    logger.warning(
                        "%s failed (kind=%s attempt=%s/%s): %s; retrying",
                        label,
                        exc.kind.value,
                        attempt,
                        attempts,
                        exc.message,
                    )
                    delay_s = self.backoff_delay_s(attempt)
                    if delay_s > 0:
                        await self._sleep(delay_s)
                    continue
                if retryable:
                    logger.warning(
                        "%s failed (kind=%s attempt=%s/%s): %s; giving up",
                        label,
                        exc.kind.value,
                        attempt,
                        attempts,
                        exc.message,
                    )
                raise
        raise RuntimeError("unreachable: retry loop exited without a result")


def with_retry(
    step: Any,
    max_retries: Optional[int] = None,
    is_retryable: Optional[RetryPredicate] = None,
    *,
    policy: Optional[RetryPolicy] = None,
) -> Any:
    """Returns a copy of ``step`` whose invoke retries retryable failures.

    Both raised ChunkFlowErrors and returned ErrorRecords count as failures.
    """
    policy = policy or RetryPolicy(max_retries, is_retryable=is_retryable)
    inner = step.invoke

    async def invoke(state: Any) -> Any:
        async def attempt_once() -> Any:
            result = inner(state)
            if inspect.isawaitable(result):
                result = await result
            if isinstance(result, ErrorRecord):
                raise error_from_record(result)
            return result

        value, _ = await policy.call(attempt_once, label=f"Step '{step.name}'")
        return value

    return dataclasses.replace(step, invoke=invoke, retryable=False)


async def call_capability(
    executor: Any,
    request: CapabilityRequest,
    timeout_s: Optional[float] = None,
) -> CapabilityResponse:
    """One capability call with a timeout; failures come out as ExternalCallError."""
    try:
        if timeout_s is not None and timeout_s > 0:
            raw = await asyncio.wait_for(execute_capability(executor, request), timeout=timeout_s)
        else:
            raw = await execute_capability(executor, request)
    except asyncio.TimeoutError:
        raise ExternalCallError(
            f"Capability '{request.capability}' timed out after {timeout_s}s",
            retryable=True,
            details={"capability": request.capability, "timeout_s": timeout_s},
        ) from None
    except ChunkFlowError:
        raise
    except Exception as exc:
        raise ExternalCallError(
            f"Capability '{request.capability}' failed: {exc}",
            details={"capability": request.capability, "exception_type": type(exc).__name__},
        ) from exc
    return normalize_response(raw, capability=request.capability)


async def call_capability_with_retry(
    executor: Any,
    request: CapabilityRequest,
    *,
    policy: RetryPolicy,
    timeout_s: Optional[float] = None,
    label: Optional[str] = None,
) -> Tuple[CapabilityResponse, int]:
    return await policy.call(
        lambda: call_capability(executor, request, timeout_s),
        label=label or f"Capability '{request.capability}'",
    )
