"""Non-retry recovery paths for failures that retrying cannot fix."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from ..logging import get_logger
from .classify import message_of
from .errors import ErrorKind
from .queue import DurableQueue

LOG = get_logger("resilience-fallback")

CLOUD_FALLBACK_KEY = "cloud_fallback"
OFFLINE_DATA_KEY = "offline_data"


@dataclass(frozen=True)
class FallbackOutcome:
    strategy: str
    success: bool
    message: str
    data: Dict[str, Any] = field(default_factory=dict)
    offline: bool = False
    manual_entry: bool = False
    queue_key: Optional[str] = None
    queued_item_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "strategy": self.strategy,
            "success": self.success,
            "fallback": True,
            "offline": self.offline,
            "manual_entry": self.manual_entry,
            "message": self.message,
            "queue_key": self.queue_key,
        }


StrategyHandler = Callable[[BaseException, Dict[str, Any], bool], Optional[FallbackOutcome]]


@dataclass(frozen=True)
class FallbackStrategy:
    name: str
    description: str
    handler: StrategyHandler


def _stamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


class FallbackHandler:
    """Registry of fallback strategies keyed by error kind."""

    def __init__(self, queue: DurableQueue) -> None:
        self.queue = queue
        self._strategies: Dict[ErrorKind, FallbackStrategy] = {}
        self._register_defaults()

    def _register_defaults(self) -> None:
        self.register_strategy(
            ErrorKind.CLOUD_STORAGE,
            FallbackStrategy(
                name="cloud_storage",
                description="Store payloads locally when cloud upload fails",
                handler=self._cloud_storage_fallback,
            ),
        )
        self.register_strategy(
            ErrorKind.OCR,
            FallbackStrategy(
                name="ocr_processing",
                description="Allow manual data entry when OCR fails",
                handler=self._ocr_fallback,
            ),
        )
        self.register_strategy(
            ErrorKind.NETWORK,
            FallbackStrategy(
                name="network_error",
                description="Store data locally and sync when connection is restored",
                handler=self._network_fallback,
            ),
        )

    def register_strategy(self, kind: ErrorKind, strategy: FallbackStrategy) -> None:
        self._strategies[kind] = strategy

    def has_fallback(self, kind: ErrorKind) -> bool:
        return kind in self._strategies

    def available_strategies(self) -> List[Dict[str, str]]:
        return [
            {"kind": kind.value, "name": s.name, "description": s.description}
            for kind, s in self._strategies.items()
        ]

    def select(
        self,
        kind: ErrorKind,
        error: BaseException,
        payload: Optional[Dict[str, Any]] = None,
        *,
        online: bool = True,
    ) -> Optional[FallbackOutcome]:
        strategy = self._strategies.get(kind)
        if strategy is None:
            return None
        LOG.info(f"Fallback strategy '{strategy.name}' selected for {kind.value}")
        data = dict(payload or {})
        try:
            return strategy.handler(error, data, online)
        except Exception as exc:
            LOG.error(f"Fallback strategy '{strategy.name}' failed: {exc}")
            return FallbackOutcome(strategy=strategy.name, success=False, message="Fallback strategy failed", data=data)

    # ---------- default strategies ----------
    def _cloud_storage_fallback(self, error: BaseException, payload: Dict[str, Any], online: bool) -> FallbackOutcome:
        item = self.queue.append(
            CLOUD_FALLBACK_KEY,
            {
                "timestamp": _stamp(),
                "type": "cloud_storage_fallback",
                "data": payload,
                "error": message_of(error),
            },
        )
        return FallbackOutcome(
            strategy="cloud_storage",
            success=True,
            message="Data stored locally. Will sync when cloud storage is available.",
            data=payload,
            queue_key=CLOUD_FALLBACK_KEY,
            queued_item_id=item.item_id,
        )

    def _ocr_fallback(self, error: BaseException, payload: Dict[str, Any], online: bool) -> FallbackOutcome:
        return FallbackOutcome(
            strategy="ocr_processing",
            success=False,
            message="Unable to read receipt automatically. Please enter the details manually.",
            data=payload,
            manual_entry=True,
        )

    def _network_fallback(self, error: BaseException, payload: Dict[str, Any], online: bool) -> Optional[FallbackOutcome]:
        if online:
            return None
        item = self.queue.append(
            OFFLINE_DATA_KEY,
            {
                "timestamp": _stamp(),
                "type": "offline_data",
                "data": payload,
                "error": message_of(error),
                "needsSync": True,
            },
        )
        return FallbackOutcome(
            strategy="network_error",
            success=True,
            offline=True,
            message="Data saved offline. Will sync when online.",
            data=payload,
            queue_key=OFFLINE_DATA_KEY,
            queued_item_id=item.item_id,
        )
