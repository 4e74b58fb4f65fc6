"""VAPID key management for identifying this server to push services."""

import logging
from dataclasses import dataclass

from cryptography.hazmat.primitives import serialization
from py_vapid import Vapid02
from py_vapid.utils import b64urldecode, b64urlencode

from safework.config import Settings
from safework.core.exceptions import KeyConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VapidKeyPair:
    """Base64url-encoded P-256 key pair."""

    public_key: str
    private_key: str


def _encode_public_key(vapid: Vapid02) -> str:
    raw = vapid.public_key.public_bytes(
        serialization.Encoding.X962,
        serialization.PublicFormat.UncompressedPoint,
    )
    return b64urlencode(raw)


def _encode_private_key(vapid: Vapid02) -> str:
    raw = vapid.private_key.private_numbers().private_value.to_bytes(32, "big")
    return b64urlencode(raw)


class KeyManager:
    """Holds the loaded VAPID pair. Immutable after construction."""

    def __init__(self, public_key: str, private_key: str, subject: str):
        if not public_key or not private_key:
            raise KeyConfigurationError("VAPID public and private keys must both be set")
        if not subject:
            raise KeyConfigurationError("VAPID subject (contact e-mail or URL) must be set")

        try:
            vapid = Vapid02.from_string(private_key)
        except (ValueError, TypeError) as e:
            raise KeyConfigurationError(f"Malformed VAPID private key: {e}") from e

        try:
            configured_public = b64urldecode(public_key.encode())
        except (ValueError, TypeError) as e:
            raise KeyConfigurationError(f"Malformed VAPID public key: {e}") from e

        if b64urldecode(_encode_public_key(vapid).encode()) != configured_public:
            raise KeyConfigurationError("VAPID public key does not match the private key")

        self._vapid = vapid
        self._public_key = public_key
        self._private_key = private_key
        self._subject = subject

    @classmethod
    def from_settings(cls, settings: Settings) -> "KeyManager":
        manager = cls(
            public_key=settings.vapid_public_key,
            private_key=settings.vapid_private_key,
            subject=settings.vapid_email,
        )
        logger.info("VAPID keys loaded")
        return manager

    @staticmethod
    def generate_key_pair() -> VapidKeyPair:
        """Generate a fresh pair, for provisioning or key rotation."""
        vapid = Vapid02()
        vapid.generate_keys()
        return VapidKeyPair(
            public_key=_encode_public_key(vapid),
            private_key=_encode_private_key(vapid),
        )

    @property
    def public_key(self) -> str:
        """Application server key handed to clients when they subscribe."""
        return self._public_key

    @property
    def private_key(self) -> str:
        return self._private_key

    def vapid_claims(self) -> dict[str, str]:
        subject = self._subject
        if "@" in subject and not subject.startswith("mailto:"):
            subject = f"mailto:{subject}"
        return {"sub": subject}
