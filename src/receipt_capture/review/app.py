from __future__ import annotations

import base64
import binascii
from typing import Any, Dict, List, Optional

from starlette.applications import Starlette
from starlette.exceptions import HTTPException
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from ..capture.files import FileUpload
from ..logging import get_logger
from ..pipeline.flow import ReceiptCaptureFlow
from ..resilience.errors import ClassifiedError, InvalidTransition, ValidationError
from ..resilience.notifier import CollectingNotifier

LOG = get_logger("review-api")


def _drain_notices(flow: ReceiptCaptureFlow) -> List[Dict[str, object]]:
    notifier = flow.notifier
    if isinstance(notifier, CollectingNotifier):
        return [n.to_dict() for n in notifier.drain()]
    return []


async def _json_body(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Request body must be JSON") from exc


def _decode_upload(entry: Any, position: int) -> FileUpload:
    if not isinstance(entry, dict):
        raise HTTPException(status_code=400, detail=f"files[{position}] must be an object")
    name = str(entry.get("name") or f"receipt-{position + 1}.jpg")
    mime = str(entry.get("mime_type") or entry.get("type") or "")
    try:
        data = base64.b64decode(str(entry.get("data") or ""), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise HTTPException(status_code=400, detail=f"files[{position}].data is not valid base64") from exc
    return FileUpload(name=name, data=data, mime_type=mime)


def create_app(
    flow: ReceiptCaptureFlow,
    *,
    allow_origins: Optional[List[str]] = None,
) -> Starlette:
    """Create a Starlette app exposing batch review and queue maintenance over JSON.

    Every response carries the notices emitted while handling the request
    (when the flow uses a CollectingNotifier).
    """

    def respond(payload: Dict[str, Any], status_code: int = 200) -> JSONResponse:
        payload = dict(payload)
        payload["notices"] = _drain_notices(flow)
        return JSONResponse(payload, status_code=status_code)

    async def guarded(call):
        try:
            return await call()
        except InvalidTransition as exc:
            return respond({"detail": exc.message}, status_code=409)
        except ValidationError as exc:
            return respond({"detail": exc.message, "field": exc.field}, status_code=400)
        except ClassifiedError as exc:
            return respond(
                {"detail": exc.message, "kind": exc.kind.value, "retryable": exc.retryable},
                status_code=502,
            )

    async def health(_: Request) -> JSONResponse:
        return respond({"status": "ok", "pending": flow.pending()})

    async def errors(request: Request) -> JSONResponse:
        if request.method == "DELETE":
            flow.resilience.clear_errors()
            return respond({"cleared": True})
        return respond({
            "items": [r.to_dict() for r in flow.resilience.error_records()],
            "strategies": flow.resilience.fallbacks.available_strategies(),
        })

    async def batch_state(_: Request) -> JSONResponse:
        return respond(flow.batch.snapshot())

    async def batch_files(request: Request) -> JSONResponse:
        body = await _json_body(request)
        files = body.get("files") if isinstance(body, dict) else None
        if not isinstance(files, list):
            raise HTTPException(status_code=400, detail="Expected a 'files' list")
        uploads = [_decode_upload(entry, i) for i, entry in enumerate(files)]

        async def _select():
            accepted = flow.batch.select_files(uploads)
            return respond({"accepted": len(accepted), **flow.batch.snapshot()})

        return await guarded(_select)

    async def batch_process(_: Request) -> JSONResponse:
        async def _process():
            await flow.batch.process()
            return respond(flow.batch.snapshot())

        return await guarded(_process)

    async def batch_item(request: Request) -> JSONResponse:
        index = int(request.path_params["index"])
        body = await _json_body(request)
        if not isinstance(body, dict):
            raise HTTPException(status_code=400, detail="Expected an object of fields")

        async def _edit():
            receipt = flow.batch.edit_item(index, body)
            return respond({"receipt": receipt.to_dict()})

        return await guarded(_edit)

    async def batch_transactions(_: Request) -> JSONResponse:
        async def _create():
            report = await flow.batch.create_transactions()
            return respond({"report": report.to_dict(), **flow.batch.snapshot()})

        return await guarded(_create)

    async def batch_reset(_: Request) -> JSONResponse:
        flow.batch.reset()
        return respond(flow.batch.snapshot())

    async def queue_sync(_: Request) -> JSONResponse:
        reports = await flow.sync_offline()
        return respond({
            "reports": {key: report.to_dict() for key, report in reports.items()},
            "pending": flow.pending(),
        })

    routes = [
        Route("/api/health", health, methods=["GET"]),
        Route("/api/errors", errors, methods=["GET", "DELETE"]),
        Route("/api/batch", batch_state, methods=["GET"]),
        Route("/api/batch/files", batch_files, methods=["POST"]),
        Route("/api/batch/process", batch_process, methods=["POST"]),
        Route("/api/batch/items/{index:int}", batch_item, methods=["PATCH"]),
        Route("/api/batch/transactions", batch_transactions, methods=["POST"]),
        Route("/api/batch/reset", batch_reset, methods=["POST"]),
        Route("/api/queue/sync", queue_sync, methods=["POST"]),
    ]

    app = Starlette(debug=False, routes=routes)

    origins = allow_origins or ["http://localhost:5173", "http://127.0.0.1:5173"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if "*" in origins else origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    LOG.info("Review API ready")
    return app


__all__ = ["create_app"]
