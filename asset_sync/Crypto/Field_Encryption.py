# Field_Encryption.py
# Description: Encryption of sensitive record fields before upload and after download.
#
# Imports
import base64
import json
import os
from typing import Any, Dict, Optional, Union
#
# 3rd-Party Imports
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from loguru import logger
#
# Local Imports
#
#######################################################################################################################
#
# Functions:

class EncryptionError(Exception):
    """Raised when a payload cannot be encrypted. The record must not be uploaded."""
    pass


class DecryptionError(EncryptionError):
    """Raised when a cipher blob cannot be decrypted. The record is skipped."""
    pass


class EncryptionService:
    """
    Contract used by the sync core. A payload is the dict of a record's sensitive fields;
    the cipher blob is an opaque string stored in `data_cipher_text`.
    """

    def is_ready(self) -> bool:
        return True

    async def encrypt_payload(self, payload: Dict[str, Any]) -> str:
        raise NotImplementedError

    async def decrypt_payload(self, cipher_text: str) -> Dict[str, Any]:
        """Should raise DecryptionError for a bad blob; any other exception is treated the same way."""
        raise NotImplementedError


class AESGCMEncryptionService(EncryptionService):
    """AES-256-GCM with a random 96-bit nonce per payload; blob = base64(version | nonce | ciphertext)."""

    NONCE_SIZE = 12
    KEY_SIZE = 32
    FORMAT_VERSION = b"\x01"
    KDF_ITERATIONS = 390_000

    def __init__(self, key: Optional[bytes] = None, associated_data: Optional[bytes] = b"asset-sync"):
        if key is not None and len(key) != self.KEY_SIZE:
            raise ValueError(f"AES-GCM key must be {self.KEY_SIZE} bytes")
        self._key = key
        self._aad = associated_data

    @classmethod
    def generate_key(cls) -> bytes:
        return AESGCM.generate_key(bit_length=cls.KEY_SIZE * 8)

    @classmethod
    def derive_key(cls, passphrase: Union[str, bytes], salt: bytes) -> bytes:
        """PBKDF2-HMAC-SHA256 key derivation for a user-supplied passphrase."""
        if isinstance(passphrase, str):
            passphrase = passphrase.encode("utf-8")
        kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=cls.KEY_SIZE, salt=salt, iterations=cls.KDF_ITERATIONS)
        return kdf.derive(passphrase)

    @classmethod
    def from_passphrase(cls, passphrase: Union[str, bytes], salt: bytes) -> "AESGCMEncryptionService":
        return cls(cls.derive_key(passphrase, salt))

    def set_key(self, key: bytes):
        if len(key) != self.KEY_SIZE:
            raise ValueError(f"AES-GCM key must be {self.KEY_SIZE} bytes")
        self._key = key

    def is_ready(self) -> bool:
        return self._key is not None

    async def encrypt_payload(self, payload: Dict[str, Any]) -> str:
        if self._key is None:
            raise EncryptionError("Encryption key is not loaded")
        try:
            plaintext = json.dumps(payload, default=str, ensure_ascii=False).encode("utf-8")
            nonce = os.urandom(self.NONCE_SIZE)
            ciphertext = AESGCM(self._key).encrypt(nonce, plaintext, self._aad)
        except (TypeError, ValueError) as e:
            raise EncryptionError(f"Failed to encrypt payload: {e}") from e
        return base64.b64encode(self.FORMAT_VERSION + nonce + ciphertext).decode("ascii")

    async def decrypt_payload(self, cipher_text: str) -> Dict[str, Any]:
        if self._key is None:
            raise DecryptionError("Encryption key is not loaded")
        try:
            raw = base64.b64decode(cipher_text, validate=True)
        except (TypeError, ValueError) as e:
            raise DecryptionError(f"Cipher text is not valid base64: {e}") from e
        if len(raw) <= 1 + self.NONCE_SIZE or raw[:1] != self.FORMAT_VERSION:
            raise DecryptionError("Unsupported cipher text format")
        nonce, ciphertext = raw[1:1 + self.NONCE_SIZE], raw[1 + self.NONCE_SIZE:]
        try:
            plaintext = AESGCM(self._key).decrypt(nonce, ciphertext, self._aad)
        except InvalidTag as e:
            raise DecryptionError("Cipher text failed authentication") from e
        try:
            payload = json.loads(plaintext.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise DecryptionError(f"Decrypted payload is not JSON: {e}") from e
        if not isinstance(payload, dict):
            raise DecryptionError("Decrypted payload is not an object")
        logger.trace(f"Decrypted payload with {len(payload)} field(s)")
        return payload

#
# End of Field_Encryption.py
#######################################################################################################################
