"""Symmetric encryption of serialized sensitive payloads."""

from __future__ import annotations

import base64
import hashlib
import json
from typing import Any, Dict, Mapping

from cryptography.fernet import Fernet, InvalidToken

from billing.errors import EncryptionError


def _json_default(value: Any) -> Any:
    """Serialise decimals, datetimes and enums as strings."""

    return str(value)


class SecretCipher:
    """Encrypts payloads with a key derived from the application secret.

    The key is the SHA-256 digest of the secret, urlsafe-base64 encoded into a
    Fernet key. Tokens carry their own IV and HMAC, so equal payloads produce
    different ciphertexts and tampering is detected on decrypt.
    """

    def __init__(self, secret: str) -> None:
        if not secret:
            raise ValueError("SecretCipher requires a non-empty secret")
        key = base64.urlsafe_b64encode(hashlib.sha256(secret.encode("utf-8")).digest())
        self._fernet = Fernet(key)

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, token: str) -> str:
        if not token:
            raise EncryptionError("Encrypted payload is empty")
        try:
            return self._fernet.decrypt(token.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeError) as exc:
            raise EncryptionError("Unable to decrypt sensitive payload") from exc

    def seal(self, payload: Mapping[str, Any]) -> str:
        """Serialize ``payload`` to JSON and encrypt it."""

        return self.encrypt(json.dumps(dict(payload), default=_json_default, sort_keys=True))

    def unseal(self, token: str) -> Dict[str, Any]:
        """Decrypt a token produced by :meth:`seal` back into a mapping."""

        plaintext = self.decrypt(token)
        try:
            data = json.loads(plaintext)
        except json.JSONDecodeError as exc:
            raise EncryptionError("Decrypted payload is not valid JSON") from exc
        if not isinstance(data, dict):
            raise EncryptionError("Decrypted payload is not a mapping")
        return data
