"""
Secret encryption — per-field envelopes addressed to the connector.

Every non-plain config value travels as a JWE compact envelope built with
``jose.jwe``: the content key is wrapped with ``RSA-OAEP-256`` using the
connector's public key and the payload is sealed with ``A256GCM``.  The
payload is a small claim set ``{iss, aud, value}``; ``aud`` names the
connector the value is meant for and is checked after decryption, so an
envelope addressed to another connector is rejected even when the key
matches.  The recipient is also carried as ``kid`` in the protected
header, which is authenticated as AEAD additional data.

Key material is an RSA key pair exported as base64 encoded PEM, read from
``config.private_key`` / ``config.public_key`` (env vars ``PRIVATE_KEY`` /
``PUBLIC_KEY``).  Generate a fresh pair with ``KeyPair.generate()``.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from typing import Any, Dict, Mapping, Optional

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jose import jwe
from jose.constants import ALGORITHMS
from jose.exceptions import JOSEError

from config.settings import Settings, config
from connectors.schema import ConfigSchemaBuilder
from utils.errors import DecryptionError, KeyMaterialError

logger = logging.getLogger(__name__)

KEY_ALGORITHM = ALGORITHMS.RSA_OAEP_256
CONTENT_ALGORITHM = ALGORITHMS.A256GCM


def _decode_pem(value: str) -> bytes:
    """Accept either base64 encoded PEM (the export format) or raw PEM."""
    stripped = value.strip()
    if stripped.startswith("-----BEGIN"):
        return stripped.encode("utf-8")
    try:
        return base64.b64decode(stripped, validate=True)
    except (ValueError, binascii.Error) as exc:
        raise KeyMaterialError(f"key is not valid base64: {exc}") from exc


class KeyPair:
    """RSA key pair bound to one connector identity."""

    def __init__(self, private_key: rsa.RSAPrivateKey, public_key: rsa.RSAPublicKey):
        self.private_key = private_key
        self.public_key = public_key

    @classmethod
    def generate(cls, key_size: int = 2048) -> "KeyPair":
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
        return cls(private_key, private_key.public_key())

    @classmethod
    def from_base64(cls, private_b64: Optional[str], public_b64: Optional[str]) -> "KeyPair":
        """
        Load and validate a pair from its export format.

        Raises
        ------
        KeyMaterialError – a key is missing, unparsable or the two do not match
        """
        if not private_b64 or not public_b64:
            raise KeyMaterialError("public and private key are required")
        try:
            private_key = serialization.load_pem_private_key(_decode_pem(private_b64), password=None)
            public_key = serialization.load_pem_public_key(_decode_pem(public_b64))
        except KeyMaterialError:
            raise
        except (ValueError, TypeError) as exc:
            raise KeyMaterialError(f"could not load key: {exc}") from exc

        if not isinstance(private_key, rsa.RSAPrivateKey) or not isinstance(public_key, rsa.RSAPublicKey):
            raise KeyMaterialError("keys must be RSA keys")

        pair = cls(private_key, public_key)
        pair.validate()
        return pair

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "KeyPair":
        settings = settings or config
        return cls.from_base64(settings.private_key, settings.public_key)

    def validate(self) -> None:
        if self.private_key.public_key().public_numbers() != self.public_key.public_numbers():
            raise KeyMaterialError("public key does not belong to private key")

    def private_pem(self) -> bytes:
        return self.private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )

    def public_pem(self) -> bytes:
        return self.public_key.public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )

    def export_private_base64(self) -> str:
        return base64.b64encode(self.private_pem()).decode("ascii")

    def export_public_base64(self) -> str:
        return base64.b64encode(self.public_pem()).decode("ascii")


class SecretCodec:
    """Encrypts and decrypts single config values for one connector id."""

    def __init__(self, key_pair: KeyPair, connector_id: str):
        self.key_pair = key_pair
        self.connector_id = connector_id
        self._public_pem = key_pair.public_pem()
        self._private_pem = key_pair.private_pem()

    def encrypt(self, value: Any, recipient_id: Optional[str] = None, issuer: str = "none") -> str:
        """Seal a JSON-serializable *value* into a compact envelope."""
        recipient = recipient_id or self.connector_id
        claims = {"iss": issuer, "aud": recipient, "value": value}
        payload = json.dumps(claims, separators=(",", ":"), ensure_ascii=False).encode("utf-8")

        envelope = jwe.encrypt(
            payload,
            self._public_pem,
            encryption=CONTENT_ALGORITHM,
            algorithm=KEY_ALGORITHM,
            kid=recipient,
        )
        return envelope.decode("ascii") if isinstance(envelope, bytes) else envelope

    def decrypt(self, envelope: str, recipient_id: Optional[str] = None) -> Any:
        """
        Open an envelope addressed to *recipient_id* (default: this connector).

        Raises
        ------
        DecryptionError – malformed, wrong recipient, wrong key or tampered
        """
        recipient = recipient_id or self.connector_id
        if not isinstance(envelope, str) or not envelope:
            raise DecryptionError("envelope must be a non-empty string")
        if envelope.count(".") != 4:
            raise DecryptionError("malformed envelope")

        try:
            plaintext = jwe.decrypt(envelope, self._private_pem)
            claims = json.loads(plaintext)
        except (JOSEError, ValueError, TypeError) as exc:
            raise DecryptionError(f"could not decrypt envelope: {exc!r}") from exc

        if not isinstance(claims, dict) or "value" not in claims:
            raise DecryptionError("malformed envelope payload")
        if claims.get("aud") != recipient:
            raise DecryptionError(f"envelope is not addressed to {recipient}")
        return claims["value"]

    def decrypt_config(self, secrets: Mapping[str, Any], schema: ConfigSchemaBuilder) -> Dict[str, Any]:
        """
        Decrypt one config snapshot field by field.

        Empty values are skipped, plain fields are taken as-is, and a field
        that fails to decrypt is logged and left out.
        """
        decrypted: Dict[str, Any] = {}
        for key, value in secrets.items():
            if not value:
                continue
            if schema.is_plain(key):
                decrypted[key] = value
                continue
            try:
                decrypted[key] = self.decrypt(value)
            except DecryptionError as exc:
                logger.warning("Failed to decrypt config field '%s' for %s: %s", key, self.connector_id, exc)
        return decrypted
