"""
Bóveda de credenciales para la integración de facturación electrónica.

Todas las credenciales (contraseñas del API, tokens bearer cacheados, llaves de
terceros a nivel plataforma) pasan por aquí antes de persistirse.

- AES-256-GCM con nonce aleatorio de 96 bits por cifrado.
- Llave derivada con scrypt desde el secreto maestro (MATIAS_ENCRYPTION_KEY)
  con sal fija por proceso: el secreto maestro es el verdadero secreto.
- Formato almacenado: ``hex(nonce):hex(ciphertext+tag)``.

La rotación de llave requiere re-cifrar todos los secretos fuera de línea.
"""
import logging
import os
from functools import lru_cache
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from app.core.config import settings

logger = logging.getLogger(__name__)

AES_KEY_SIZE = 32
NONCE_SIZE = 12
KDF_SALT = b"ebilling-credential-vault-v1"
SCRYPT_N = 2 ** 14
SCRYPT_R = 8
SCRYPT_P = 1


class CredentialVaultError(Exception):
    """Error base de la bóveda de credenciales."""


class EncryptionKeyMissingError(CredentialVaultError):
    """No hay secreto maestro configurado: el despliegue está mal configurado."""


class CredentialDecryptionError(CredentialVaultError):
    """Texto cifrado corrupto, alterado o cifrado con otra llave."""


@lru_cache(maxsize=8)
def derive_key(master_secret: str) -> bytes:
    """Derivar la llave AES-256 del secreto maestro (determinística y sin estado)."""
    kdf = Scrypt(salt=KDF_SALT, length=AES_KEY_SIZE, n=SCRYPT_N, r=SCRYPT_R, p=SCRYPT_P)
    return kdf.derive(master_secret.encode("utf-8"))


class CredentialVault:
    """
    Cifrado simétrico autenticado de secretos.

    Usage:
        vault = CredentialVault(master_secret)
        stored = vault.encrypt("password")
        vault.decrypt(stored) == "password"
    """

    def __init__(self, master_secret: Optional[str]):
        if not master_secret:
            raise EncryptionKeyMissingError(
                "MATIAS_ENCRYPTION_KEY environment variable is required for secure credential storage"
            )
        self._aesgcm = AESGCM(derive_key(master_secret))

    def encrypt(self, plaintext: str) -> str:
        nonce = os.urandom(NONCE_SIZE)
        ciphertext = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
        return f"{nonce.hex()}:{ciphertext.hex()}"

    def decrypt(self, ciphertext: str) -> str:
        try:
            nonce_hex, payload_hex = ciphertext.split(":", 1)
            nonce = bytes.fromhex(nonce_hex)
            payload = bytes.fromhex(payload_hex)
            if len(nonce) != NONCE_SIZE:
                raise ValueError("invalid nonce length")
            return self._aesgcm.decrypt(nonce, payload, None).decode("utf-8")
        except (ValueError, AttributeError, InvalidTag, UnicodeDecodeError) as e:
            logger.error(f"Credential decryption failed: {type(e).__name__}")
            raise CredentialDecryptionError("Could not decrypt stored credential") from e


def get_credential_vault() -> CredentialVault:
    """Construir la bóveda a partir de la configuración actual."""
    return CredentialVault(settings.MATIAS_ENCRYPTION_KEY)
