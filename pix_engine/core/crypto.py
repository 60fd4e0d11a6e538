"""
crypto.py
---------
Primitivas criptográficas del motor, inyectables en los servicios.

  - PayloadCipher → AES-256-GCM para snapshots sensibles (payload crudo
                    de los webhooks). Formato: nonce (12 bytes) + ciphertext + tag.
  - HmacSigner    → firma HMAC-SHA256 con clave explícita. La usa la cadena
                    de auditoría y la verificación de webhooks entrantes.

Ningún componente lee secretos del entorno por su cuenta: las instancias
se construyen en api/dependencies.py a partir de settings y se pasan
por constructor, así los tests usan claves propias sin estado global.
"""

import hashlib
import hmac
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from pix_engine.core.exceptions import EncryptionError

_NONCE_SIZE = 12   # 96 bits, recomendado por NIST para GCM


def derive_key(secret: str) -> bytes:
    """AES-256-GCM requiere 32 bytes exactos → sha256 produce 32 bytes."""
    return hashlib.sha256(secret.encode()).digest()


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class PayloadCipher:
    """Cifra y descifra bytes con AES-256-GCM."""

    def __init__(self, key: bytes) -> None:
        if len(key) != 32:
            raise ValueError("PayloadCipher requiere una clave de 32 bytes.")
        self._aesgcm = AESGCM(key)

    @classmethod
    def from_secret(cls, secret: str) -> "PayloadCipher":
        return cls(derive_key(secret))

    def encrypt(self, data: bytes) -> bytes:
        nonce = os.urandom(_NONCE_SIZE)
        return nonce + self._aesgcm.encrypt(nonce, data, None)

    def decrypt(self, blob: bytes) -> bytes:
        nonce, ciphertext = blob[:_NONCE_SIZE], blob[_NONCE_SIZE:]
        try:
            return self._aesgcm.decrypt(nonce, ciphertext, None)
        except InvalidTag:
            raise EncryptionError("AES-GCM: datos corruptos o alterados.")


class HmacSigner:
    """
    Capacidad de firma con clave explícita.

        signer = HmacSigner(b"secret")
        sig = signer.sign(b"payload")
        assert signer.verify(b"payload", sig)
    """

    def __init__(self, secret: bytes) -> None:
        if not secret:
            raise ValueError("HmacSigner requiere un secreto no vacío.")
        self._secret = secret

    def sign(self, data: bytes) -> str:
        return hmac.new(self._secret, data, hashlib.sha256).hexdigest()

    def verify(self, data: bytes, signature: str) -> bool:
        # compare_digest evita ataques de tiempo
        return hmac.compare_digest(self.sign(data), signature or "")
