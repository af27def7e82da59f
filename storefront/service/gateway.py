from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx

from storefront.logging import get_logger, sanitize_error_message
from storefront.service.errors import UpstreamError

logger = get_logger(__name__)


@dataclass
class GatewayInitiation:
    pidx: str
    payment_url: Optional[str]
    expires_at: Optional[str] = None


@dataclass
class GatewayLookup:
    pidx: str
    status: str
    total_amount: Optional[int] = None
    transaction_id: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


class KhaltiGateway:
    """Client for the Khalti ePayment initiate and lookup endpoints.

    Any transport failure, timeout or malformed reply raises
    ``UpstreamError``; callers never see a half-parsed response.
    """

    def __init__(
        self,
        secret_key: Optional[str],
        *,
        base_url: str = "https://a.khalti.com/api/v2",
        timeout_seconds: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Key {self.secret_key or ''}",
            "Content-Type": "application/json",
        }

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if not self.secret_key:
            raise UpstreamError("payment gateway is not configured")
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_seconds, transport=self._transport
            ) as client:
                resp = await client.post(url, json=payload, headers=self._headers())
                resp.raise_for_status()
                data = resp.json()
        except httpx.TimeoutException as exc:
            logger.warning("gateway_timeout", path=path, timeout=self.timeout_seconds)
            raise UpstreamError(
                "payment gateway timed out", detail={"timeout": True}
            ) from exc
        except httpx.HTTPStatusError as exc:
            body = sanitize_error_message(exc.response.text[:500])
            logger.warning(
                "gateway_http_error",
                path=path,
                status_code=exc.response.status_code,
                body=body,
            )
            raise UpstreamError(
                "payment gateway rejected the request",
                detail={"upstreamStatus": exc.response.status_code},
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning(
                "gateway_transport_error",
                path=path,
                error_type=type(exc).__name__,
                error=sanitize_error_message(str(exc)),
            )
            raise UpstreamError("payment gateway unreachable") from exc
        except ValueError as exc:
            logger.warning("gateway_invalid_json", path=path)
            raise UpstreamError("payment gateway returned an invalid response") from exc
        if not isinstance(data, dict):
            raise UpstreamError("payment gateway returned an invalid response")
        return data

    async def initiate(self, payload: Dict[str, Any]) -> GatewayInitiation:
        data = await self._post("/epayment/initiate/", payload)
        pidx = data.get("pidx")
        if not pidx:
            logger.warning("gateway_initiate_missing_pidx", keys=sorted(data))
            raise UpstreamError("payment gateway did not return a transaction reference")
        return GatewayInitiation(
            pidx=str(pidx),
            payment_url=data.get("payment_url"),
            expires_at=data.get("expires_at"),
        )

    async def lookup(self, pidx: str) -> GatewayLookup:
        data = await self._post("/epayment/lookup/", {"pidx": pidx})
        status = data.get("status")
        if not status:
            raise UpstreamError("payment gateway lookup returned no status")
        total = data.get("total_amount")
        return GatewayLookup(
            pidx=str(data.get("pidx") or pidx),
            status=str(status),
            total_amount=int(total) if isinstance(total, (int, float)) else None,
            transaction_id=data.get("transaction_id"),
            raw=data,
        )
