"""Payment gateway client and platform request signing."""

from task_settlement_service.clients.payment_gateway_client import PaymentGatewayClient
from task_settlement_service.clients.platform_signer import PlatformSigner

__all__ = ["PaymentGatewayClient", "PlatformSigner"]
