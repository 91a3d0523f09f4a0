from .Field_Encryption import (
    EncryptionService, AESGCMEncryptionService, EncryptionError, DecryptionError
)

__all__ = ["EncryptionService", "AESGCMEncryptionService", "EncryptionError", "DecryptionError"]
