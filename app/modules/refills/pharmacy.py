"""
Pharmacy fulfillment handoff.

A prescribed refill becomes an order at the partner pharmacy. Only the order
reference comes back; the partner's protocol beyond a single POST is not
modelled here.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from typing import Optional
from uuid import UUID

import httpx

from app.common.exceptions import RemoteGatewayError
from app.core.config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PharmacyOrderRequest:
    patient_id: UUID
    clinic_id: UUID
    refill_id: UUID
    medication_name: Optional[str]
    medication_strength: Optional[str]
    medication_form: Optional[str]
    vial_count: int

    def to_payload(self) -> dict:
        payload = asdict(self)
        for key in ("patient_id", "clinic_id", "refill_id"):
            payload[key] = str(payload[key])
        return payload


class PharmacyClient(ABC):
    @abstractmethod
    async def submit_order(self, order: PharmacyOrderRequest) -> str:
        """Submit the order and return the pharmacy's order reference."""
        pass


class HttpPharmacyClient(PharmacyClient):
    """POSTs orders to PHARMACY_API_URL/orders with a bearer API key."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.base_url = (base_url or settings.PHARMACY_API_URL or "").rstrip("/")
        self.api_key = api_key or settings.PHARMACY_API_KEY
        self.timeout = timeout or settings.PHARMACY_TIMEOUT_SECONDS
        self._transport = transport

    async def submit_order(self, order: PharmacyOrderRequest) -> str:
        if not self.base_url:
            raise RemoteGatewayError("Pharmacy integration is not configured", provider_code="not_configured")

        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport
            ) as client:
                response = await client.post(
                    "/orders",
                    json=order.to_payload(),
                    headers={**headers, "Idempotency-Key": f"refill-{order.refill_id}-order"}
                )
                response.raise_for_status()
                data = response.json()
        except httpx.TimeoutException as e:
            logger.error(f"[PHARMACY] Order for refill {order.refill_id} timed out")
            raise RemoteGatewayError("Pharmacy request timed out", provider_code="timeout") from e
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            logger.error(f"[PHARMACY] Order for refill {order.refill_id} rejected with HTTP {status_code}")
            raise RemoteGatewayError(
                f"Pharmacy rejected the order (HTTP {status_code})",
                provider_code=str(status_code)
            ) from e
        except httpx.HTTPError as e:
            logger.error(f"[PHARMACY] Network error for refill {order.refill_id}: {type(e).__name__}")
            raise RemoteGatewayError("Pharmacy network error", provider_code="network") from e
        except ValueError as e:
            raise RemoteGatewayError("Pharmacy returned an invalid response") from e

        order_ref = data.get("order_id") or data.get("id")
        if not order_ref:
            raise RemoteGatewayError("Pharmacy response did not include an order reference")

        logger.info(f"[PHARMACY] Submitted refill {order.refill_id} as order {order_ref}")
        return str(order_ref)
