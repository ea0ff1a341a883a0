# src/sealed_chat/services/crypto.py
"""Hybrid RSA-OAEP / AES-CBC encryption for message payloads."""

from __future__ import annotations

import base64
import binascii
import logging
import os

from cryptography.hazmat.primitives import hashes, padding, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.asymmetric import padding as asym_padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from sealed_chat.core.blob import BLOB_DELIMITER, ENCRYPTED_BLOB_PATTERN
from sealed_chat.core.errors import CryptoError

logger = logging.getLogger(__name__)

AES_KEY_BYTES = 32
AES_IV_BYTES = 16
UNDISPLAYABLE = "[Unable to display message]"


def _oaep() -> asym_padding.OAEP:
    return asym_padding.OAEP(
        mgf=asym_padding.MGF1(algorithm=hashes.SHA256()),
        algorithm=hashes.SHA256(),
        label=None,
    )


class CryptoService:
    """Service handling end-to-end payload encryption.

    Every payload gets a fresh AES-256 key and IV. The AES key is wrapped with
    the recipient's RSA public key, so only the holder of the matching private
    key can recover it. The private key never leaves the client.
    """

    @staticmethod
    def load_public_key(public_key_pem: str) -> rsa.RSAPublicKey:
        """Parse a PEM-encoded RSA public key.

        Raises:
            CryptoError: If the PEM is malformed or is not an RSA key.
        """
        try:
            key = serialization.load_pem_public_key(public_key_pem.encode())
        except (ValueError, TypeError) as err:
            raise CryptoError(f"Invalid public key: {err}") from err
        if not isinstance(key, rsa.RSAPublicKey):
            raise CryptoError("Public key must be an RSA key")
        return key

    @staticmethod
    def is_encrypted_blob(value: str) -> bool:
        """Return True if `value` has the `ciphertext|iv|wrappedKey` shape."""
        return bool(ENCRYPTED_BLOB_PATTERN.match(value))

    @staticmethod
    def encrypt(plaintext: str | bytes, recipient_public_key_pem: str) -> str:
        """Encrypt `plaintext` so only the recipient can read it.

        Args:
            plaintext: Message text (UTF-8 encoded before encryption) or raw media bytes
            recipient_public_key_pem: Recipient's PEM-encoded RSA public key

        Returns:
            `b64(ciphertext)|b64(iv)|b64(wrappedKey)`

        Raises:
            CryptoError: If the public key is malformed
        """
        public_key = CryptoService.load_public_key(recipient_public_key_pem)
        data = plaintext.encode("utf-8") if isinstance(plaintext, str) else plaintext

        aes_key = os.urandom(AES_KEY_BYTES)
        iv = os.urandom(AES_IV_BYTES)

        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(data) + padder.finalize()
        encryptor = Cipher(algorithms.AES(aes_key), modes.CBC(iv)).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()

        try:
            wrapped_key = public_key.encrypt(aes_key, _oaep())
        except ValueError as err:
            raise CryptoError(f"Unable to wrap message key: {err}") from err

        return BLOB_DELIMITER.join(
            base64.b64encode(part).decode("ascii") for part in (ciphertext, iv, wrapped_key)
        )

    @staticmethod
    def _decrypt_bytes(blob: str, private_key_pem: str) -> bytes:
        parts = blob.split(BLOB_DELIMITER)
        if len(parts) != 3:
            raise CryptoError("Encrypted payload must have three segments")
        try:
            ciphertext, iv, wrapped_key = (base64.b64decode(part, validate=True) for part in parts)
        except (binascii.Error, ValueError) as err:
            raise CryptoError(f"Invalid base64 segment: {err}") from err

        try:
            private_key = serialization.load_pem_private_key(private_key_pem.encode(), password=None)
        except (ValueError, TypeError) as err:
            raise CryptoError(f"Invalid private key: {err}") from err
        if not isinstance(private_key, rsa.RSAPrivateKey):
            raise CryptoError("Private key must be an RSA key")

        try:
            aes_key = private_key.decrypt(wrapped_key, _oaep())
            decryptor = Cipher(algorithms.AES(aes_key), modes.CBC(iv)).decryptor()
            padded = decryptor.update(ciphertext) + decryptor.finalize()
            unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
            return unpadder.update(padded) + unpadder.finalize()
        except ValueError as err:
            raise CryptoError(f"Unable to decrypt payload: {err}") from err

    @staticmethod
    def decrypt(blob: str, private_key_pem: str) -> str:
        """Decrypt a text payload.

        Returns:
            The plaintext, or `UNDISPLAYABLE` if the blob is corrupt or was
            encrypted for a different key.
        """
        try:
            return CryptoService._decrypt_bytes(blob, private_key_pem).decode("utf-8")
        except (CryptoError, UnicodeDecodeError) as err:
            logger.warning("Decryption failed: %s", err)
            return UNDISPLAYABLE

    @staticmethod
    def decrypt_bytes(blob: str, private_key_pem: str) -> bytes | None:
        """Decrypt a media payload; returns None when it cannot be decrypted."""
        try:
            return CryptoService._decrypt_bytes(blob, private_key_pem)
        except CryptoError as err:
            logger.warning("Media decryption failed: %s", err)
            return None

    @staticmethod
    def generate_key_pair(bits: int = 2048) -> tuple[str, str]:
        """Generate a new RSA key pair.

        Returns:
            Tuple of (private_key_pem, public_key_pem)
        """
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=bits)
        private_pem = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        ).decode("ascii")
        public_pem = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        ).decode("ascii")
        return private_pem, public_pem


def is_undisplayable(value: str) -> bool:
    """Return True for the placeholder produced by a failed decryption."""
    return value == UNDISPLAYABLE
