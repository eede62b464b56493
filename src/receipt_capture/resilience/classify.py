"""Map arbitrary exceptions onto the pipeline's error taxonomy.

Classification is a priority-ordered list of predicates over the error's
metadata. The first predicate that matches wins, so a message mentioning both
"upload" and "Invalid" is a cloud storage error, not a validation error.
"""

from __future__ import annotations

import asyncio
import builtins
from typing import Callable, List, Optional, Tuple

import httpx

from .errors import ClassifiedError, ErrorKind

NON_RETRYABLE_STATUS = frozenset({401, 403})
RETRYABLE_KINDS = frozenset({ErrorKind.NETWORK, ErrorKind.SERVER})

CODE_TO_KIND = {
    "NETWORK_ERROR": ErrorKind.NETWORK,
    "OCR_ERROR": ErrorKind.OCR,
    "CLOUD_STORAGE_ERROR": ErrorKind.CLOUD_STORAGE,
    "VALIDATION_ERROR": ErrorKind.VALIDATION,
    "AUTH_ERROR": ErrorKind.AUTH,
    "PERMISSION_ERROR": ErrorKind.PERMISSION,
    "SERVER_ERROR": ErrorKind.SERVER,
}


def status_code_of(error: BaseException) -> Optional[int]:
    status = getattr(error, "status_code", None)
    if status is None:
        response = getattr(error, "response", None)
        status = getattr(response, "status_code", None)
    try:
        return int(status) if status is not None else None
    except (TypeError, ValueError):
        return None


def message_of(error: BaseException) -> str:
    msg = getattr(error, "message", None)
    if isinstance(msg, str) and msg:
        return msg
    return str(error) or type(error).__name__


def _contains(msg: str, *needles: str) -> bool:
    return any(n in msg for n in needles)


def _is_network(error: BaseException, status: Optional[int], msg: str) -> bool:
    if isinstance(error, (httpx.TransportError, asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return True
    return _contains(msg, "Network Error", "fetch", "timed out")


def _is_ocr(error: BaseException, status: Optional[int], msg: str) -> bool:
    return _contains(msg, "OCR", "scanning", "tesseract")


def _is_cloud_storage(error: BaseException, status: Optional[int], msg: str) -> bool:
    return _contains(msg, "cloudinary", "upload", "storage")


def _is_validation(error: BaseException, status: Optional[int], msg: str) -> bool:
    return status == 400 or _contains(msg, "validation", "Invalid")


def _is_auth(error: BaseException, status: Optional[int], msg: str) -> bool:
    return status == 401 or _contains(msg, "token", "unauthorized")


def _is_permission(error: BaseException, status: Optional[int], msg: str) -> bool:
    if isinstance(error, builtins.PermissionError):
        return True
    return status == 403 or _contains(msg, "permission", "forbidden")


def _is_server(error: BaseException, status: Optional[int], msg: str) -> bool:
    return status is not None and status >= 500


Predicate = Callable[[BaseException, Optional[int], str], bool]

PREDICATES: List[Tuple[ErrorKind, Predicate]] = [
    (ErrorKind.NETWORK, _is_network),
    (ErrorKind.OCR, _is_ocr),
    (ErrorKind.CLOUD_STORAGE, _is_cloud_storage),
    (ErrorKind.VALIDATION, _is_validation),
    (ErrorKind.AUTH, _is_auth),
    (ErrorKind.PERMISSION, _is_permission),
    (ErrorKind.SERVER, _is_server),
]


def classify(error: Optional[BaseException]) -> ErrorKind:
    if error is None:
        return ErrorKind.UNKNOWN
    if isinstance(error, ClassifiedError):
        return error.kind
    # An explicit code set by the raiser is authoritative.
    code = getattr(error, "code", None)
    if isinstance(code, str) and code in CODE_TO_KIND:
        return CODE_TO_KIND[code]
    status = status_code_of(error)
    msg = message_of(error)
    for kind, predicate in PREDICATES:
        if predicate(error, status, msg):
            return kind
    return ErrorKind.UNKNOWN


def is_retryable(error: BaseException, kind: Optional[ErrorKind] = None) -> bool:
    """Only network and server failures are retried, and never a 401/403."""
    if status_code_of(error) in NON_RETRYABLE_STATUS:
        return False
    return (kind or classify(error)) in RETRYABLE_KINDS
