from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Dict, List, Optional, Protocol, Tuple, runtime_checkable

import httpx

from chunkflow.core.config import TraceConfig, config
from chunkflow.core.stores import sanitize_jsonable
from chunkflow.engine.retry import backoff_delay_s

logger = logging.getLogger(__name__)


@runtime_checkable
class TraceSink(Protocol):
    def on_run_start(self, run_id: str, meta: Dict[str, Any]) -> None: ...

    def on_transition(self, step_name: str, before: Any, after: Any) -> None: ...

    def on_run_end(self, run_id: str, final_state: Any, meta: Dict[str, Any]) -> None: ...


class NoopTraceSink:
    def on_run_start(self, run_id: str, meta: Dict[str, Any]) -> None:
        return None

    def on_transition(self, step_name: str, before: Any, after: Any) -> None:
        return None

    def on_run_end(self, run_id: str, final_state: Any, meta: Dict[str, Any]) -> None:
        return None


class LoggingTraceSink:
    def __init__(self, level: int = logging.INFO, trace_logger: Optional[logging.Logger] = None) -> None:
        self.level = level
        self.logger = trace_logger or logger

    def on_run_start(self, run_id: str, meta: Dict[str, Any]) -> None:
        self.logger.log(self.level, "Run %s started (%s)", run_id, meta)

    def on_transition(self, step_name: str, before: Any, after: Any) -> None:
        self.logger.log(
            self.level,
            "Run %s step '%s': %s -> %s (errors=%s)",
            after.run_id,
            step_name,
            before.status.value,
            after.status.value,
            after.error_count,
        )

    def on_run_end(self, run_id: str, final_state: Any, meta: Dict[str, Any]) -> None:
        self.logger.log(
            self.level,
            "Run %s ended with status=%s (%s)",
            run_id,
            final_state.status.value,
            meta,
        )


def _retryable_status_code(status_code: int) -> bool:
    return status_code in (408, 429) or 500 <= status_code <= 599


def _signature_header(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def _post_once(url: str, body: bytes, headers: Dict[str, str], timeout_s: float) -> Tuple[bool, Optional[Exception]]:
    """One POST. Returns (retryable, error); error is None on a 2xx."""
    try:
        response = httpx.post(url, content=body, headers=headers, timeout=timeout_s)
    except httpx.RequestError as exc:
        return True, exc
    if response.is_success:
        return False, None
    try:
        response.raise_for_status()
    except httpx.HTTPStatusError as exc:
        return _retryable_status_code(response.status_code), exc
    return False, None


def send_run_webhook_event(
    *,
    url: str,
    secret: Optional[str],
    event: str,
    run_id: str,
    run: Dict[str, Any],
    max_attempts: int = 3,
    timeout_s: float = 5.0,
    backoff_base_s: Optional[float] = None,
    backoff_max_s: Optional[float] = None,
) -> None:
    """Posts one run event, retrying timeouts, 408 / 429 / 5xx and network errors.

    The last error is raised once the attempts are used up or the failure is
    not retryable.
    """
    base_s = config.trace.webhook_backoff_base_s if backoff_base_s is None else backoff_base_s
    max_s = config.trace.webhook_backoff_max_s if backoff_max_s is None else backoff_max_s

    body = json.dumps(
        {"event": event, "run_id": run_id, "status": str(run.get("status") or ""), "run": run},
        ensure_ascii=False,
        separators=(",", ":"),
    ).encode("utf-8")
    headers = {"Content-Type": "application/json", "User-Agent": "ChunkFlow-Webhook/1.0"}
    if secret:
        headers["X-ChunkFlow-Signature"] = _signature_header(secret, body)

    attempts = max(1, max_attempts)
    for attempt in range(1, attempts + 1):
        retryable, error = _post_once(url, body, headers, timeout_s)
        if error is None:
            logger.info("Trace webhook delivered (event=%s run_id=%s attempt=%s)", event, run_id, attempt)
            return

        will_retry = retryable and attempt < attempts
        logger.warning(
            "Trace webhook failed (event=%s run_id=%s attempt=%s/%s): %s; %s",
            event,
            run_id,
            attempt,
            attempts,
            error,
            "retrying" if will_retry else "giving up",
        )
        if not will_retry:
            raise error
        delay_s = backoff_delay_s(attempt, base_s, max_s)
        if delay_s > 0:
            time.sleep(delay_s)


def summarize_state(state: Any) -> Dict[str, Any]:
    return sanitize_jsonable(
        {
            "run_id": state.run_id,
            "status": state.status,
            "error_count": state.error_count,
            "error_summary": state.error_summary,
            "metrics": state.metrics,
            "last_error": state.last_error,
        }
    )


class WebhookTraceSink:
    """Posts run start / end (and optionally every transition) to a webhook.

    Delivery runs on a worker thread so the event loop never blocks on HTTP;
    ``background=False`` delivers inline. Delivery failures are logged only.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        secret: Optional[str] = None,
        *,
        include_transitions: bool = False,
        background: bool = True,
        trace_config: Optional[TraceConfig] = None,
    ) -> None:
        trace_config = trace_config or config.trace
        self.url = url or trace_config.webhook_url
        if not self.url:
            raise ValueError("WebhookTraceSink needs a url (or CHUNKFLOW_TRACE_WEBHOOK_URL)")
        self.secret = secret if secret is not None else trace_config.webhook_secret
        self.max_attempts = trace_config.webhook_max_attempts
        self.timeout_s = trace_config.webhook_timeout_s
        self.backoff_base_s = trace_config.webhook_backoff_base_s
        self.backoff_max_s = trace_config.webhook_backoff_max_s
        self.include_transitions = include_transitions
        self._pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="chunkflow-trace") if background else None
        self._pending: List[Future] = []

    def _deliver(self, event: str, run_id: str, run: Dict[str, Any]) -> None:
        try:
            send_run_webhook_event(
                url=self.url,
                secret=self.secret,
                event=event,
                run_id=run_id,
                run=run,
                max_attempts=self.max_attempts,
                timeout_s=self.timeout_s,
                backoff_base_s=self.backoff_base_s,
                backoff_max_s=self.backoff_max_s,
            )
        except Exception as exc:
            logger.warning("Trace webhook dropped (event=%s run_id=%s): %s", event, run_id, exc)

    def _send(self, event: str, run_id: str, run: Dict[str, Any]) -> None:
        if self._pool is None:
            self._deliver(event, run_id, run)
            return
        self._pending.append(self._pool.submit(self._deliver, event, run_id, run))

    def on_run_start(self, run_id: str, meta: Dict[str, Any]) -> None:
        self._send("run.started", run_id, {"status": "initializing", "meta": sanitize_jsonable(meta)})

    def on_transition(self, step_name: str, before: Any, after: Any) -> None:
        if not self.include_transitions:
            return
        run = summarize_state(after)
        run["step"] = step_name
        run["previous_status"] = before.status.value
        self._send("run.transition", after.run_id, run)

    def on_run_end(self, run_id: str, final_state: Any, meta: Dict[str, Any]) -> None:
        event = "run.completed" if final_state.status.value == "completed" else "run.failed"
        run = summarize_state(final_state)
        run["meta"] = sanitize_jsonable(meta)
        self._send(event, run_id, run)

    def flush(self, timeout_s: Optional[float] = None) -> None:
        pending, self._pending = self._pending, []
        for future in pending:
            future.result(timeout=timeout_s)

    def close(self) -> None:
        self.flush()
        if self._pool is not None:
            self._pool.shutdown(wait=True)
