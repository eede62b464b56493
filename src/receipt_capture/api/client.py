from typing import Any, Dict, List, Optional, Sequence

import httpx

from ..domain.models import CapturedImage
from ..logging import get_logger
from ..resilience.errors import ApiError


class ReceiptApiClient:
    """Async client for the receipt service (scan, transactions, history).

    Every non-2xx answer becomes an ``ApiError`` carrying the status code and
    the service's ``message``; transport failures and timeouts become an
    ``ApiError`` with code ``NETWORK_ERROR``.
    """

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        *,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base = base_url.rstrip("/")
        self.timeout = float(timeout)
        self.log = get_logger("receipt-api-client")
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self.s = httpx.AsyncClient(
            base_url=self.base,
            headers=headers,
            timeout=httpx.Timeout(self.timeout),
            transport=transport,
        )

    async def __aenter__(self) -> "ReceiptApiClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.s.aclose()

    # ---------- helpers ----------
    def _json(self, r: httpx.Response) -> Any:
        try:
            body = r.json()
        except ValueError:
            body = None
        if r.is_success:
            return body
        message = None
        if isinstance(body, dict):
            message = body.get("message") or body.get("error")
        if not message:
            message = r.text[:200] or r.reason_phrase or f"HTTP {r.status_code}"
        self.log.warning(f"{r.request.method} {r.request.url.path} -> {r.status_code}: {message}")
        raise ApiError(str(message), status_code=r.status_code)

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            r = await self.s.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            self.log.error(f"{method} {path} timed out: {e}")
            raise ApiError(f"Network Error: request timed out ({path})", code="NETWORK_ERROR") from e
        except httpx.TransportError as e:
            self.log.error(f"{method} {path} failed: {e}")
            raise ApiError(f"Network Error: {e}", code="NETWORK_ERROR") from e
        return self._json(r)

    @staticmethod
    def _file_field(name: str, image: CapturedImage):
        return (name, (image.filename, image.data, image.mime_type))

    # ---------- scanning ----------
    async def scan_receipt(self, image: CapturedImage) -> Dict[str, Any]:
        self.log.info(f"POST scan: file={image.filename} bytes={image.size} source={image.source.value}")
        body = await self._request("POST", "/receipts/scan", files=[self._file_field("receipt", image)])
        return body if isinstance(body, dict) else {}

    async def batch_scan(self, images: Sequence[CapturedImage]) -> Dict[str, Any]:
        self.log.info(f"POST batch scan: files={len(images)}")
        files = [self._file_field("receipts", img) for img in images]
        body = await self._request("POST", "/receipts/batch-scan", files=files)
        return body if isinstance(body, dict) else {}

    # ---------- transactions ----------
    async def create_transaction(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        self.log.info(
            f"POST create transaction: merchant={payload.get('merchant')!r} amount={payload.get('amount')}"
        )
        body = await self._request("POST", "/receipts/create-transaction", json=payload)
        return body if isinstance(body, dict) else {}

    async def batch_create_transactions(self, receipt_ids: List[str]) -> Dict[str, Any]:
        self.log.info(f"POST batch create transactions: receipts={len(receipt_ids)}")
        body = await self._request(
            "POST", "/receipts/batch-create-transactions", json={"receiptIds": list(receipt_ids)}
        )
        return body if isinstance(body, dict) else {}

    # ---------- receipts ----------
    async def update_receipt(self, receipt_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        body = await self._request("PUT", f"/receipts/{receipt_id}", json=fields)
        return body if isinstance(body, dict) else {}

    async def delete_receipt(self, receipt_id: str) -> Dict[str, Any]:
        body = await self._request("DELETE", f"/receipts/{receipt_id}")
        return body if isinstance(body, dict) else {}

    async def receipt_history(self) -> List[Dict[str, Any]]:
        body = await self._request("GET", "/receipts/history")
        if isinstance(body, dict):
            data = body.get("data")
            return list(data) if isinstance(data, list) else []
        return list(body) if isinstance(body, list) else []

    # ---------- connectivity ----------
    async def is_reachable(self) -> bool:
        """Cheap probe used to decide between retrying later and queuing offline."""
        try:
            r = await self.s.get("/health", timeout=min(self.timeout, 5.0))
        except httpx.HTTPError as e:
            self.log.debug(f"Health probe failed: {e}")
            return False
        # Any HTTP answer, even an error status, means the network path works.
        self.log.debug(f"Health probe answered {r.status_code}")
        return True
