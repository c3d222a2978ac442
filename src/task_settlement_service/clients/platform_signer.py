"""Ed25519 JWS signer for requests the platform sends to the payment gateway."""

from __future__ import annotations

import base64
import json
from pathlib import Path
from typing import Any

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    load_pem_private_key,
)
from joserfc import jws
from joserfc.jwk import OKPKey


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode()


def ensure_private_key(private_key_path: str) -> Path:
    """Generate an Ed25519 PEM key at ``private_key_path`` unless one exists."""
    path = Path(private_key_path)
    if not path.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
        pem = Ed25519PrivateKey.generate().private_bytes(
            Encoding.PEM, PrivateFormat.PKCS8, NoEncryption()
        )
        path.write_bytes(pem)
    return path


class PlatformSigner:
    """
    Creates JWS compact tokens signed with the platform's Ed25519 key.

    Every charge, payout and refund request carries one of these tokens so
    the gateway can authenticate the settlement service. The key id is the
    platform agent id.
    """

    def __init__(self, platform_agent_id: str, private_key: Ed25519PrivateKey) -> None:
        self._agent_id = platform_agent_id
        jwk_dict: dict[str, str | list[str]] = {
            "kty": "OKP",
            "crv": "Ed25519",
            "d": _b64url(private_key.private_bytes_raw()),
            "x": _b64url(private_key.public_key().public_bytes_raw()),
        }
        self._key = OKPKey.import_key(jwk_dict)
        self._public_key = (
            "ed25519:" + base64.b64encode(private_key.public_key().public_bytes_raw()).decode()
        )

    @classmethod
    def from_pem_file(cls, platform_agent_id: str, private_key_path: str) -> PlatformSigner:
        private_key = load_pem_private_key(Path(private_key_path).read_bytes(), password=None)
        if not isinstance(private_key, Ed25519PrivateKey):
            msg = "Platform private key must be an Ed25519 private key"
            raise ValueError(msg)
        return cls(platform_agent_id, private_key)

    @property
    def agent_id(self) -> str:
        return self._agent_id

    @property
    def public_key(self) -> str:
        """Public key in ``ed25519:<base64>`` form, for registering with the gateway."""
        return self._public_key

    def sign(self, action: str, payload: dict[str, Any]) -> str:
        """Sign ``payload`` with ``action`` merged in; returns header.payload.signature."""
        protected = {"alg": "EdDSA", "kid": self._agent_id}
        body = {"action": action, **payload}
        payload_bytes = json.dumps(body, separators=(",", ":"), sort_keys=True).encode()
        return jws.serialize_compact(protected, payload_bytes, self._key, algorithms=["EdDSA"])
