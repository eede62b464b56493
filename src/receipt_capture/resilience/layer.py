"""Retry, classification, fallback and notification in one place.

Every network-facing stage goes through ``ResilienceLayer.with_retry`` and,
when that gives up, through ``handle_failure`` which decides between a
fallback (local queue, manual entry) and surfacing the error.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from ..logging import get_logger
from .classify import classify, is_retryable, message_of, status_code_of
from .error_log import ErrorLog
from .errors import ClassifiedError, ErrorKind, ErrorRecord, severity_for
from .fallback import OFFLINE_DATA_KEY, FallbackHandler, FallbackOutcome
from .notifier import LoggingNotifier, NoticeKind, Notifier
from .queue import DurableQueue, SyncFunction, SyncReport

LOG = get_logger("resilience")

T = TypeVar("T")

ERROR_TITLES: Dict[ErrorKind, str] = {
    ErrorKind.NETWORK: "Connection Error",
    ErrorKind.OCR: "Scanning Failed",
    ErrorKind.CLOUD_STORAGE: "Upload Failed",
    ErrorKind.VALIDATION: "Invalid Data",
    ErrorKind.AUTH: "Authentication Required",
    ErrorKind.PERMISSION: "Access Denied",
    ErrorKind.SERVER: "Server Error",
    ErrorKind.UNKNOWN: "Unexpected Error",
}

_RECORD_ATTR = "_receipt_error_record"


class ResilienceLayer:
    def __init__(
        self,
        *,
        queue: DurableQueue,
        notifier: Optional[Notifier] = None,
        error_log: Optional[ErrorLog] = None,
        max_attempts: int = 3,
        retry_delay: float = 1.0,
        attempt_timeout: Optional[float] = 30.0,
        is_online: Optional[Callable[[], Awaitable[bool]]] = None,
    ) -> None:
        self.queue = queue
        self.notifier: Notifier = notifier or LoggingNotifier()
        self.error_log = error_log or ErrorLog()
        self.fallbacks = FallbackHandler(queue)
        self.max_attempts = max(1, int(max_attempts))
        self.retry_delay = max(0.0, float(retry_delay))
        self.attempt_timeout = attempt_timeout
        self._is_online = is_online

    # ------------------------------------------------------------------
    # Classification and the rolling log
    # ------------------------------------------------------------------
    def classify(self, error: BaseException) -> ErrorKind:
        return classify(error)

    def is_retryable(self, error: BaseException) -> bool:
        return is_retryable(error)

    def record(self, error: BaseException, context: Optional[Dict[str, Any]] = None) -> ErrorRecord:
        """Classify ``error`` and append it to the rolling log."""
        if isinstance(error, ClassifiedError):
            return error.record
        kind = classify(error)
        record = ErrorRecord(
            kind=kind,
            severity=severity_for(kind),
            retryable=is_retryable(error, kind),
            message=message_of(error),
            status_code=status_code_of(error),
            context=dict(context or {}),
        )
        self.error_log.append(record)
        setattr(error, _RECORD_ATTR, record)
        LOG.warning(
            "Error logged: kind=%s severity=%s retryable=%s message=%s",
            record.kind.value,
            record.severity.value,
            record.retryable,
            record.message,
        )
        return record

    def record_for(self, error: BaseException, context: Optional[Dict[str, Any]] = None) -> ErrorRecord:
        """Return the record already attached to ``error``, logging it if there is none."""
        if isinstance(error, ClassifiedError):
            return error.record
        existing = getattr(error, _RECORD_ATTR, None)
        if isinstance(existing, ErrorRecord):
            return existing
        return self.record(error, context)

    def classified(self, error: BaseException, context: Optional[Dict[str, Any]] = None) -> ClassifiedError:
        if isinstance(error, ClassifiedError):
            return error
        return ClassifiedError(self.record_for(error, context))

    def error_records(self) -> List[ErrorRecord]:
        return self.error_log.records()

    def clear_errors(self) -> None:
        self.error_log.clear()

    # ------------------------------------------------------------------
    # Retry
    # ------------------------------------------------------------------
    async def with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        max_attempts: Optional[int] = None,
        *,
        context: Optional[Dict[str, Any]] = None,
    ) -> T:
        """Run ``operation`` up to ``max_attempts`` times with a fixed delay.

        Only retryable failures are retried. The last error propagates unchanged.
        """
        attempts = max(1, int(max_attempts or self.max_attempts))
        attempt = 0
        while True:
            attempt += 1
            try:
                if self.attempt_timeout:
                    return await asyncio.wait_for(operation(), timeout=self.attempt_timeout)
                return await operation()
            except Exception as exc:
                record = self.record(exc, {**(context or {}), "attempt": attempt, "max_attempts": attempts})
                if not record.retryable or attempt >= attempts:
                    if record.retryable:
                        LOG.error(f"Giving up after {attempt} attempt(s): {record.message}")
                    raise
                LOG.info(f"Retrying in {self.retry_delay:.1f}s (attempt {attempt + 1}/{attempts})")
                await asyncio.sleep(self.retry_delay)

    # ------------------------------------------------------------------
    # Fallback
    # ------------------------------------------------------------------
    def select_fallback(
        self,
        kind: ErrorKind,
        error: BaseException,
        payload: Optional[Dict[str, Any]] = None,
        *,
        online: bool = True,
    ) -> Optional[FallbackOutcome]:
        return self.fallbacks.select(kind, error, payload, online=online)

    async def is_online(self) -> bool:
        if self._is_online is None:
            return True
        try:
            return bool(await self._is_online())
        except Exception as exc:
            LOG.warning(f"Connectivity probe failed; assuming offline: {exc}")
            return False

    async def handle_failure(
        self,
        error: BaseException,
        *,
        payload: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None,
        message: Optional[str] = None,
        allow_fallback: bool = True,
    ) -> Optional[FallbackOutcome]:
        """Notify once for ``error`` and run its fallback strategy, if any.

        Returns the fallback outcome, or None when the caller should surface
        the error. Reads pass ``allow_fallback=False``: there is nothing to queue.
        """
        record = self.record_for(error, context)
        outcome: Optional[FallbackOutcome] = None
        if allow_fallback:
            online = True
            if record.kind is ErrorKind.NETWORK:
                online = await self.is_online()
            outcome = self.select_fallback(record.kind, error, payload, online=online)

        if outcome is not None and outcome.success:
            self.notifier.notify(NoticeKind.DEGRADED, outcome.message, record.severity)
        elif outcome is not None:
            self.notifier.notify(NoticeKind.ERROR, outcome.message, record.severity)
        else:
            title = ERROR_TITLES.get(record.kind, ERROR_TITLES[ErrorKind.UNKNOWN])
            self.notifier.notify(NoticeKind.ERROR, f"{title}: {message or record.message}", record.severity)
        return outcome

    async def sync_offline(self, sync: SyncFunction) -> SyncReport:
        """Deliver payloads queued while offline; ``sync`` receives each payload's data."""

        async def _deliver(entry: Dict[str, Any]) -> Any:
            return await sync(entry.get("data") or {})

        report = await self.queue.drain(OFFLINE_DATA_KEY, _deliver)
        if report.synced:
            self.notifier.notify(NoticeKind.SUCCESS, f"Synced {report.synced} offline item(s)")
        if report.errors:
            self.notifier.notify(NoticeKind.WARNING, f"{report.errors} offline item(s) could not be synced yet")
        return report
