"""RSA key generation and envelope decryption for the link handshake."""

from __future__ import annotations

import base64
import binascii
import math
from dataclasses import dataclass
from typing import Callable

import orjson
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

DEFAULT_MIN_CIPHERTEXT_BYTES = 64
DEFAULT_MAX_CIPHERTEXT_BYTES = 1024

DecryptFn = Callable[[bytes, str], bytes]


class DecryptionError(ValueError):
    """Raised when an encrypted envelope cannot be turned into a secret."""


@dataclass(frozen=True)
class KeyPair:
    public_key: str
    private_key: str


def load_private_key(pem: str) -> rsa.RSAPrivateKey:
    if not pem:
        raise DecryptionError("private key missing")
    key = serialization.load_pem_private_key(pem.encode("utf-8"), password=None)
    if not isinstance(key, rsa.RSAPrivateKey):
        raise DecryptionError("private key is not an RSA key")
    return key


def pkcs1v15_decrypt(ciphertext: bytes, private_key_pem: str) -> bytes:
    return load_private_key(private_key_pem).decrypt(ciphertext, padding.PKCS1v15())


def _positive(value: int | None) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
        and value > 0
    )


class EnvelopeCrypto:
    """Generates RSA keypairs and opens ``{"key": ...}`` envelopes.

    The peer encrypts the envelope with the public key using PKCS#1 v1.5
    padding and sends it back base64-encoded.
    """

    def __init__(
        self,
        *,
        min_ciphertext_bytes: int | None = None,
        max_ciphertext_bytes: int | None = None,
        decrypt_fn: DecryptFn = pkcs1v15_decrypt,
    ) -> None:
        self._min_bytes = DEFAULT_MIN_CIPHERTEXT_BYTES
        if _positive(min_ciphertext_bytes):
            self._min_bytes = int(min_ciphertext_bytes)
        if _positive(max_ciphertext_bytes) and max_ciphertext_bytes > self._min_bytes:
            self._max_bytes = int(max_ciphertext_bytes)
        else:
            self._max_bytes = DEFAULT_MAX_CIPHERTEXT_BYTES
        self._decrypt_fn = decrypt_fn

    @property
    def max_encoded_length(self) -> int:
        return math.ceil(self._max_bytes / 3) * 4

    def generate_key_pair(self) -> KeyPair:
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        public_pem = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        private_pem = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
        return KeyPair(public_key=public_pem.decode("ascii"), private_key=private_pem.decode("ascii"))

    def decrypt_payload(self, encoded: str, private_key: str) -> str:
        try:
            return self._decrypt(encoded, private_key)
        except Exception as exc:
            raise DecryptionError(f"Decrypt failed: {exc}") from exc

    def _decrypt(self, encoded: str, private_key: str) -> str:
        if not isinstance(encoded, str):
            raise DecryptionError("invalid base64: payload must be a string")
        normalized = "".join(encoded.split())
        if not normalized:
            raise DecryptionError("invalid base64: empty payload")
        if len(normalized) > self.max_encoded_length:
            raise DecryptionError("invalid base64: unexpected length")

        try:
            ciphertext = base64.b64decode(normalized, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise DecryptionError(f"invalid base64: {exc}") from exc
        if not ciphertext:
            raise DecryptionError("invalid base64: empty payload")
        if not self._min_bytes <= len(ciphertext) <= self._max_bytes:
            raise DecryptionError("invalid ciphertext: unexpected length")

        try:
            decrypted = self._decrypt_fn(ciphertext, private_key)
        except Exception as exc:
            raise DecryptionError(f"invalid ciphertext: {exc}") from exc
        if isinstance(decrypted, str):
            decrypted = decrypted.encode("utf-8")
        if not isinstance(decrypted, (bytes, bytearray, memoryview)):
            raise DecryptionError("Decryption produced empty result")

        try:
            data = orjson.loads(bytes(decrypted))
        except orjson.JSONDecodeError as exc:
            raise DecryptionError(f"invalid JSON: {exc}") from exc

        key = data.get("key") if isinstance(data, dict) else None
        if not isinstance(key, str) or not key.strip():
            raise DecryptionError("Decryption produced empty result")
        return key.strip()
