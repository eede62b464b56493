from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from typing import Any, Dict, List, Optional, Sequence

from ..capture.device import Facing, OpenCVCamera
from ..capture.files import read_upload
from ..capture.manager import CaptureOptions
from ..domain.models import ImageSource
from ..logging import get_logger
from ..pipeline.flow import ReceiptCaptureFlow, build_flow_config
from ..resilience.errors import ReceiptPipelineError
from ..resilience.notifier import CollectingNotifier

LOG = get_logger("cli-main")


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2, default=str))


def _make_flow(ns: argparse.Namespace, *, camera=None, notifier=None) -> ReceiptCaptureFlow:
    # Read .env from the current working directory (walking upwards)
    config = build_flow_config(ns, script_dir=os.getcwd())
    return ReceiptCaptureFlow(config, camera=camera, notifier=notifier)


def _add_common_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--base-url", help="Override receipt API base URL (defaults to env/.env)")
    p.add_argument("--token", help="Bearer token forwarded to the receipt API (overrides env/.env)")
    p.add_argument("--timeout", type=float, help="HTTP timeout in seconds per attempt")
    p.add_argument("--retries", type=int, help="Total attempts for retryable failures")
    p.add_argument("--queue-backend", choices=["sqlite", "memory"], help="Where offline payloads are kept")


def _edit_fields(ns: argparse.Namespace) -> Dict[str, Any]:
    fields: Dict[str, Any] = {}
    for name in ("merchant", "amount", "date", "description", "type"):
        value = getattr(ns, name, None)
        if value is not None:
            fields[name] = value
    return fields


async def _run_single(flow: ReceiptCaptureFlow, source: ImageSource, options: CaptureOptions, ns: argparse.Namespace) -> int:
    async with flow:
        receipt = await flow.session.scan(source, options)
        fields = _edit_fields(ns)
        if fields:
            receipt = flow.session.update(fields)
        out: Dict[str, Any] = {"receipt": receipt.to_dict()}
        if not ns.no_commit:
            draft = await flow.session.create_transaction()
            out["transaction"] = draft.to_payload()
            out["receipt"] = flow.session.current.to_dict() if flow.session.current else None
        _print_json(out)
    return 0


def _handle_scan(ns: argparse.Namespace) -> int:
    try:
        upload = read_upload(ns.source)
    except OSError as exc:
        LOG.error(f"Cannot read {ns.source}: {exc}")
        return 2
    flow = _make_flow(ns)
    try:
        return asyncio.run(_run_single(flow, ImageSource.FILE, CaptureOptions(upload=upload), ns))
    except ReceiptPipelineError as exc:
        LOG.error(f"Scan failed: {exc.message}")
        return 1


def _handle_camera(ns: argparse.Namespace) -> int:
    index_by_facing = None
    if ns.device_index is not None:
        index_by_facing = {Facing.BACK: ns.device_index, Facing.FRONT: ns.device_index}
    camera = OpenCVCamera(index_by_facing)
    flow = _make_flow(ns, camera=camera)
    try:
        return asyncio.run(_run_single(flow, ImageSource.CAMERA, CaptureOptions(facing=Facing(ns.facing)), ns))
    except ReceiptPipelineError as exc:
        LOG.error(f"Camera capture failed: {exc.message}")
        return 1


async def _run_batch(flow: ReceiptCaptureFlow, paths: Sequence[str], no_commit: bool) -> int:
    async with flow:
        uploads = []
        for path in paths:
            try:
                uploads.append(read_upload(path))
            except OSError as exc:
                LOG.warning(f"Skipping unreadable file {path}: {exc}")
        accepted = flow.batch.select_files(uploads)
        if not accepted:
            LOG.error("No acceptable files selected")
            return 2
        await flow.batch.process()
        if not no_commit:
            await flow.batch.create_transactions()
        _print_json(flow.batch.snapshot())
    return 0


def _handle_batch(ns: argparse.Namespace) -> int:
    flow = _make_flow(ns)
    try:
        return asyncio.run(_run_batch(flow, ns.source, ns.no_commit))
    except ReceiptPipelineError as exc:
        LOG.error(f"Batch failed: {exc.message}")
        return 1


def _handle_sync(ns: argparse.Namespace) -> int:
    flow = _make_flow(ns)

    async def _sync() -> Dict[str, Any]:
        async with flow:
            reports = await flow.sync_offline()
            return {
                "reports": {key: report.to_dict() for key, report in reports.items()},
                "pending": flow.pending(),
            }

    result = asyncio.run(_sync())
    _print_json(result)
    errors = sum(r["errors"] for r in result["reports"].values())
    return 0 if errors == 0 else 3


def _handle_errors(ns: argparse.Namespace) -> int:
    # The rolling error log lives in memory, so this reports the queued
    # offline payloads, which are what survives between runs.
    flow = _make_flow(ns)
    items: List[Dict[str, Any]] = []
    for key in flow.pending():
        for item in flow.queue.read(key):
            items.append({
                "queue": key,
                "id": item.item_id,
                "created_at": item.created_at,
                "error": item.payload.get("error"),
                "operation": (item.payload.get("data") or {}).get("operation"),
            })
    if ns.clear:
        for key in flow.pending():
            flow.queue.clear(key)
    asyncio.run(flow.aclose())
    _print_json({"queued": items, "cleared": bool(ns.clear)})
    return 0


def _handle_serve(ns: argparse.Namespace) -> int:
    from ..review import create_app
    import uvicorn

    flow = _make_flow(ns, notifier=CollectingNotifier())
    allow_origins = ns.allow_origins
    if allow_origins and len(allow_origins) == 1 and allow_origins[0] == "*":
        allow_origins = ["*"]
    app = create_app(flow, allow_origins=allow_origins)
    uvicorn.run(app, host=ns.host, port=ns.port, log_level=ns.log_level)
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    provided = list(argv) if argv is not None else sys.argv[1:]
    LOG.info(f"CLI invoked with arguments: {provided}")

    parser = argparse.ArgumentParser(
        prog="receipt-capture",
        description="Capture receipts, scan them and turn them into transactions.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    scan = subparsers.add_parser("scan", help="Scan one receipt image file and create its transaction.")
    scan.add_argument("--source", required=True, help="Path to a JPG/PNG/GIF receipt image")
    for name in ("merchant", "amount", "date", "description"):
        scan.add_argument(f"--{name}", help=f"Override the scanned {name}")
    scan.add_argument("--type", choices=["expense", "income"], help="Override the transaction type")
    scan.add_argument("--no-commit", action="store_true", help="Only scan; do not create a transaction")
    _add_common_args(scan)
    scan.set_defaults(handler=_handle_scan)

    batch = subparsers.add_parser("batch", help="Scan up to 10 receipt images and create transactions.")
    batch.add_argument("--source", required=True, nargs="+", help="Receipt image paths")
    batch.add_argument("--concurrency", type=int, help="Parallel scans (default from env, else 1)")
    batch.add_argument("--no-commit", action="store_true", help="Stop after the review step")
    _add_common_args(batch)
    batch.set_defaults(handler=_handle_batch)

    camera = subparsers.add_parser("camera", help="Capture a receipt from a webcam and scan it.")
    camera.add_argument("--facing", choices=[f.value for f in Facing], default=Facing.BACK.value)
    camera.add_argument("--device-index", type=int, help="OpenCV device index to use for either facing")
    for name in ("merchant", "amount", "date", "description"):
        camera.add_argument(f"--{name}", help=f"Override the scanned {name}")
    camera.add_argument("--type", choices=["expense", "income"], help="Override the transaction type")
    camera.add_argument("--no-commit", action="store_true", help="Only scan; do not create a transaction")
    _add_common_args(camera)
    camera.set_defaults(handler=_handle_camera)

    sync = subparsers.add_parser("sync", help="Replay payloads queued while offline.")
    _add_common_args(sync)
    sync.set_defaults(handler=_handle_sync)

    errors = subparsers.add_parser("errors", help="List (or clear) payloads waiting in the local queues.")
    errors.add_argument("--clear", action="store_true", help="Drop every queued payload")
    _add_common_args(errors)
    errors.set_defaults(handler=_handle_errors)

    serve = subparsers.add_parser("serve", help="Run the batch review API.")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8002)
    serve.add_argument("--log-level", default="info")
    serve.add_argument(
        "--allow-origin",
        action="append",
        dest="allow_origins",
        help="Allowed CORS origin (can be provided multiple times, use '*' for any).",
    )
    _add_common_args(serve)
    serve.set_defaults(handler=_handle_serve)

    args = parser.parse_args(provided)
    code = args.handler(args)
    LOG.info(f"Subcommand '{args.command}' finished with exit code {code}.")
    return code


if __name__ == "__main__":
    sys.exit(main())
