"""User-facing notifications, decoupled from any presentation layer."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Protocol

from ..logging import get_logger
from .errors import Severity

LOG = get_logger("notifier")


class NoticeKind(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    SUCCESS = "success"
    DEGRADED = "degraded"


DURATION_MS: Dict[Severity, int] = {
    Severity.LOW: 3000,
    Severity.MEDIUM: 5000,
    Severity.HIGH: 7000,
    Severity.CRITICAL: 10000,
}

_LOG_LEVEL: Dict[Severity, int] = {
    Severity.LOW: logging.INFO,
    Severity.MEDIUM: logging.WARNING,
    Severity.HIGH: logging.ERROR,
    Severity.CRITICAL: logging.CRITICAL,
}


def duration_for(severity: Severity) -> int:
    return DURATION_MS.get(severity, DURATION_MS[Severity.MEDIUM])


@dataclass(frozen=True)
class Notice:
    kind: NoticeKind
    message: str
    severity: Severity

    @property
    def duration_ms(self) -> int:
        return duration_for(self.severity)

    def to_dict(self) -> Dict[str, object]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "severity": self.severity.value,
            "duration_ms": self.duration_ms,
        }


class Notifier(Protocol):
    def notify(self, kind: NoticeKind, message: str, severity: Severity = Severity.LOW) -> None:
        ...


class LoggingNotifier:
    """Notifier for headless runs: every notice becomes a log line."""

    def notify(self, kind: NoticeKind, message: str, severity: Severity = Severity.LOW) -> None:
        if kind in (NoticeKind.SUCCESS, NoticeKind.DEGRADED):
            level = logging.INFO
        else:
            level = _LOG_LEVEL.get(severity, logging.WARNING)
        LOG.log(level, "[%s/%s] %s", kind.value, severity.value, message)


class CollectingNotifier(LoggingNotifier):
    """Logs and keeps notices until drained (used by the review API)."""

    def __init__(self) -> None:
        self._notices: List[Notice] = []

    def notify(self, kind: NoticeKind, message: str, severity: Severity = Severity.LOW) -> None:
        super().notify(kind, message, severity)
        self._notices.append(Notice(kind=kind, message=message, severity=severity))

    @property
    def notices(self) -> List[Notice]:
        return list(self._notices)

    def drain(self) -> List[Notice]:
        out, self._notices = self._notices, []
        return out
