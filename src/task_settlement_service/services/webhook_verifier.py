"""Signature verification for inbound payment gateway webhooks."""

from __future__ import annotations

import base64
import binascii
import json
from typing import Any

from joserfc import jws
from joserfc.errors import BadSignatureError, JoseError
from joserfc.jwk import OKPKey

from task_settlement_service.core.exceptions import ForbiddenError, ValidationError

_KEY_PREFIX = "ed25519:"
_OUTCOMES = frozenset({"success", "failed"})


class WebhookVerifier:
    """
    Verifies EdDSA-signed webhook tokens from the gateway.

    The gateway's public key is configured as ``ed25519:<base64>``. A valid
    token's payload must carry ``reference``, ``outcome`` and, for successful
    charges, ``gateway_charge_id``.
    """

    def __init__(self, public_key: str) -> None:
        if not public_key.startswith(_KEY_PREFIX):
            msg = "Gateway webhook public key must use the 'ed25519:<base64>' format"
            raise ValueError(msg)
        try:
            raw_public = base64.b64decode(public_key[len(_KEY_PREFIX) :], validate=True)
        except binascii.Error as exc:
            msg = "Gateway webhook public key is not valid base64"
            raise ValueError(msg) from exc
        self._key = OKPKey.import_key(
            {
                "kty": "OKP",
                "crv": "Ed25519",
                "x": base64.urlsafe_b64encode(raw_public).rstrip(b"=").decode(),
            }
        )

    def verify(self, token: str) -> dict[str, Any]:
        """Return the verified webhook payload or raise a ServiceError."""
        if not token or token.count(".") != 2:
            raise ValidationError(
                "INVALID_JWS",
                "Token must be in JWS compact serialization format (header.payload.signature)",
            )

        try:
            obj = jws.deserialize_compact(token, self._key, algorithms=["EdDSA"])
        except BadSignatureError as exc:
            raise ForbiddenError("FORBIDDEN", "Webhook signature mismatch") from exc
        except (JoseError, ValueError) as exc:
            raise ValidationError("INVALID_JWS", "Token verification failed") from exc

        try:
            payload = json.loads(obj.payload)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ValidationError("INVALID_JWS", "JWS payload is not valid JSON") from exc
        if not isinstance(payload, dict):
            raise ValidationError("INVALID_JWS", "JWS payload must be a JSON object")

        reference = payload.get("reference")
        if not isinstance(reference, str) or not reference:
            raise ValidationError("INVALID_PAYLOAD", "Missing required field: reference")
        if payload.get("outcome") not in _OUTCOMES:
            raise ValidationError("INVALID_PAYLOAD", "outcome must be 'success' or 'failed'")
        charge_id = payload.get("gateway_charge_id")
        if payload["outcome"] == "success" and (not isinstance(charge_id, str) or not charge_id):
            raise ValidationError(
                "INVALID_PAYLOAD", "gateway_charge_id is required for successful charges"
            )
        return payload
