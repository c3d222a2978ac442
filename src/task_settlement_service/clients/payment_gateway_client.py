"""Async HTTP client for the external payment gateway."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import httpx

from task_settlement_service.core.exceptions import GatewayError
from task_settlement_service.logging import get_logger

if TYPE_CHECKING:
    from task_settlement_service.clients.platform_signer import PlatformSigner


class PaymentGatewayClient:
    """
    Client for gateway charges, payouts and refunds.

    Each request body is ``{"token": <platform-signed JWS>}`` and carries the
    intent reference as the ``Idempotency-Key`` header, so a retried call with
    the same reference cannot move money twice. Amounts are sent in whole
    units and as ``minor_total`` (units x 100).

    Failures are mapped to :class:`GatewayError`:
    - connection errors, timeouts and 5xx responses are transient
      (``GATEWAY_UNAVAILABLE``), safe to retry with the same reference;
    - 4xx responses are permanent (``GATEWAY_DECLINED``).
    """

    def __init__(
        self,
        base_url: str,
        charge_path: str,
        payout_path: str,
        refund_path: str,
        timeout_seconds: int,
        provider: str,
        platform_signer: PlatformSigner,
    ) -> None:
        self._base_url = base_url
        self._charge_path = charge_path
        self._payout_path = payout_path
        self._refund_path = refund_path
        self._provider = provider
        self._platform_signer = platform_signer
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds),
        )

    async def _post(
        self,
        path: str,
        action: str,
        reference: str,
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        logger = get_logger(__name__)
        token = self._platform_signer.sign(action, payload)

        try:
            response = await self._client.post(
                path,
                json={"token": token},
                headers={"Idempotency-Key": reference},
            )
        except (httpx.ConnectError, httpx.TimeoutException) as exc:
            logger.warning(
                "Payment gateway connection failed",
                extra={"error": str(exc), "action": action, "reference": reference},
            )
            raise GatewayError(
                "GATEWAY_UNAVAILABLE",
                "Cannot connect to payment gateway",
                transient=True,
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning(
                "Payment gateway HTTP error",
                extra={"error": str(exc), "action": action, "reference": reference},
            )
            raise GatewayError(
                "GATEWAY_UNAVAILABLE",
                "Payment gateway request failed",
                transient=True,
            ) from exc

        if response.status_code in (200, 201):
            result: dict[str, Any] = response.json()
            return result

        if 400 <= response.status_code < 500:
            try:
                error_body: dict[str, Any] = response.json()
            except ValueError:
                error_body = {}
            logger.warning(
                "Payment gateway declined request",
                extra={
                    "status_code": response.status_code,
                    "action": action,
                    "reference": reference,
                    "gateway_error": error_body.get("error"),
                },
            )
            raise GatewayError(
                "GATEWAY_DECLINED",
                str(error_body.get("message", "Payment gateway declined the request")),
                transient=False,
                details={"gateway_error": error_body.get("error"), "status": response.status_code},
            )

        logger.warning(
            "Payment gateway unexpected status",
            extra={"status_code": response.status_code, "action": action, "reference": reference},
        )
        raise GatewayError(
            "GATEWAY_UNAVAILABLE",
            "Payment gateway returned unexpected status",
            transient=True,
        )

    async def create_charge(
        self,
        reference: str,
        amount: int,
        currency: str,
        payer_id: str,
    ) -> str:
        """Ask the gateway to collect ``amount`` from the payer. Returns the checkout handle."""
        result = await self._post(
            self._charge_path,
            "charge",
            reference,
            {
                "reference": reference,
                "amount": amount,
                "minor_total": amount * 100,
                "currency": currency,
                "payer_id": payer_id,
                "provider": self._provider,
            },
        )
        return str(result["checkout_handle"])

    async def create_payout(
        self,
        reference: str,
        amount: int,
        currency: str,
        payee_bank_ref: dict[str, str],
    ) -> str:
        """Transfer ``amount`` to the payee's bank destination. Returns the payout id."""
        result = await self._post(
            self._payout_path,
            "payout",
            reference,
            {
                "reference": reference,
                "amount": amount,
                "minor_total": amount * 100,
                "currency": currency,
                "destination": payee_bank_ref,
                "provider": self._provider,
            },
        )
        return str(result["payout_id"])

    async def refund(self, gateway_charge_id: str, amount: int, reference: str) -> str:
        """Refund a captured charge. Returns the gateway outcome (``succeeded`` or ``failed``)."""
        result = await self._post(
            self._refund_path.format(gateway_charge_id=gateway_charge_id),
            "refund",
            reference,
            {
                "gateway_charge_id": gateway_charge_id,
                "reference": reference,
                "amount": amount,
                "minor_total": amount * 100,
            },
        )
        return str(result.get("status", "failed"))

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
