"""Wiring of the capture-to-transaction pipeline."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Dict, Mapping, Optional

import httpx

from ..api.client import ReceiptApiClient
from ..capture.device import CaptureDevice, Facing
from ..capture.manager import CaptureDeviceManager
from ..config import PipelineSettings, load_settings
from ..logging import get_logger
from ..paths import find_project_root
from ..resilience.errors import ValidationError
from ..resilience.fallback import CLOUD_FALLBACK_KEY, OFFLINE_DATA_KEY
from ..resilience.layer import ResilienceLayer
from ..resilience.notifier import LoggingNotifier, Notifier
from ..resilience.queue import DurableQueue, MemoryQueue, SqliteQueue, SyncReport
from .batch import BatchOrchestrator
from .materialize import CREATE_OPERATION, TransactionMaterializer
from .scan import ScanSubmissionService
from .session import DELETE_OPERATION, SCAN_OPERATION, UPDATE_OPERATION, ScannerSession, image_from_payload
from .staging import ReceiptStagingStore

LOG = get_logger("pipeline-flow")


@dataclass
class FlowConfig:
    settings: PipelineSettings
    repo_root: str
    script_dir: str
    facing: Facing = Facing.BACK


def build_flow_config(args, *, script_dir: str) -> FlowConfig:
    """Create a FlowConfig from CLI args over env/.env settings, logging what was chosen."""
    settings = load_settings(script_dir)
    overrides: Dict[str, Any] = {}
    if getattr(args, "base_url", None):
        overrides["base_url"] = str(args.base_url).rstrip("/")
    if getattr(args, "token", None):
        overrides["token"] = args.token
    if getattr(args, "timeout", None):
        overrides["http_timeout"] = float(args.timeout)
    if getattr(args, "retries", None):
        overrides["retry_attempts"] = max(1, int(args.retries))
    if getattr(args, "queue_backend", None):
        overrides["queue_backend"] = args.queue_backend
    if getattr(args, "concurrency", None):
        overrides["batch_concurrency"] = max(1, int(args.concurrency))
    if overrides:
        settings = replace(settings, **overrides)

    if not settings.token:
        LOG.warning("RECEIPT_API_TOKEN missing; requests will be sent without a bearer token.")

    repo_root = find_project_root(script_dir)
    facing = Facing(getattr(args, "facing", None) or Facing.BACK.value)

    LOG.info("Flow configuration prepared")
    LOG.info(f"Receipt API base URL : {settings.base_url}")
    LOG.info(f"HTTP timeout         : {settings.http_timeout}s")
    LOG.info(f"Retry attempts/delay : {settings.retry_attempts} / {settings.retry_delay}s")
    LOG.info(f"Queue backend        : {settings.queue_backend}")
    LOG.info(f"Batch concurrency    : {settings.batch_concurrency}")
    LOG.info(f"Project root         : {repo_root}")

    return FlowConfig(settings=settings, repo_root=repo_root, script_dir=script_dir, facing=facing)


def make_queue(config: FlowConfig) -> DurableQueue:
    if config.settings.queue_backend == "memory":
        return MemoryQueue()
    return SqliteQueue(config.repo_root)


class ReceiptCaptureFlow:
    """Builds every pipeline service from one FlowConfig and owns their lifetime."""

    def __init__(
        self,
        config: FlowConfig,
        *,
        notifier: Optional[Notifier] = None,
        camera: Optional[CaptureDevice] = None,
        queue: Optional[DurableQueue] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.config = config
        settings = config.settings
        self.notifier: Notifier = notifier or LoggingNotifier()
        self.queue = queue or make_queue(config)
        self.client = ReceiptApiClient(
            settings.base_url,
            settings.token,
            timeout=settings.http_timeout,
            transport=transport,
        )
        self.resilience = ResilienceLayer(
            queue=self.queue,
            notifier=self.notifier,
            max_attempts=settings.retry_attempts,
            retry_delay=settings.retry_delay,
            attempt_timeout=settings.http_timeout,
            is_online=self.client.is_reachable,
        )
        self.capture = CaptureDeviceManager(camera, facing=config.facing, settle_delay=settings.camera_settle)
        self.scanner = ScanSubmissionService(self.client, self.resilience)

        single = ReceiptStagingStore()
        self.session = ScannerSession(
            capture=self.capture,
            scanner=self.scanner,
            staging=single,
            materializer=TransactionMaterializer(self.client, self.resilience, single),
            resilience=self.resilience,
            client=self.client,
        )
        batch = ReceiptStagingStore(batch=True)
        self.batch = BatchOrchestrator(
            capture=self.capture,
            scanner=self.scanner,
            staging=batch,
            materializer=TransactionMaterializer(self.client, self.resilience, batch),
            notifier=self.notifier,
            concurrency=settings.batch_concurrency,
        )
        LOG.info("ReceiptCaptureFlow ready")

    async def __aenter__(self) -> "ReceiptCaptureFlow":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.capture.stop()
        await self.client.aclose()

    # ------------------------------------------------------------------
    # Offline replay
    # ------------------------------------------------------------------
    async def deliver(self, data: Mapping[str, Any]) -> Any:
        """Replay one queued operation against the service."""
        op = data.get("operation")
        if op == CREATE_OPERATION:
            return await self.client.create_transaction(dict(data.get("transaction") or {}))
        if op == SCAN_OPERATION:
            scan = await self.scanner.replay(image_from_payload(data))
            self.session.restore_scan(data.get("staged_id"), scan)
            return scan
        if op == UPDATE_OPERATION:
            return await self.client.update_receipt(str(data.get("receiptId")), dict(data.get("fields") or {}))
        if op == DELETE_OPERATION:
            return await self.client.delete_receipt(str(data.get("receiptId")))
        raise ValidationError(f"Unknown queued operation: {op!r}", field="operation")

    async def sync_offline(self) -> Dict[str, SyncReport]:
        """Drain both local queues; items that fail stay queued for the next run."""
        offline = await self.resilience.sync_offline(self.deliver)

        async def _cloud(entry: Dict[str, Any]) -> Any:
            return await self.deliver(entry.get("data") or {})

        cloud = await self.queue.drain(CLOUD_FALLBACK_KEY, _cloud)
        return {OFFLINE_DATA_KEY: offline, CLOUD_FALLBACK_KEY: cloud}

    def pending(self) -> Dict[str, int]:
        return {key: self.queue.size(key) for key in (OFFLINE_DATA_KEY, CLOUD_FALLBACK_KEY)}
