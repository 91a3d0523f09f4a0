# Record_Transform.py
# Description: Encrypt-before-upload and decrypt/filter-after-download for synchronized records.
#
# Imports
from typing import Any, Dict, Optional
#
# 3rd-Party Imports
from loguru import logger
#
# Local Imports
from ..Crypto.Field_Encryption import DecryptionError, EncryptionError, EncryptionService
from .Table_Registry import TableSpec
#
#######################################################################################################################
#
# Functions:

CIPHER_FIELD = "data_cipher_text"


async def prepare_record_for_upload(
    spec: TableSpec,
    record: Dict[str, Any],
    encryption: Optional[EncryptionService],
) -> Dict[str, Any]:
    """
    Moves the table's sensitive fields into one encrypted `data_cipher_text` blob.

    Raises:
        EncryptionError: The record must not be uploaded; plaintext is never sent instead.
    """
    prepared = dict(record)
    sensitive = {name: prepared.pop(name) for name in spec.sensitive_fields if name in prepared}
    if not sensitive:
        return prepared
    if encryption is None or not encryption.is_ready():
        raise EncryptionError(f"No encryption available for sensitive fields of {spec.sync_name}")
    prepared[CIPHER_FIELD] = await encryption.encrypt_payload(sensitive)
    return prepared


async def prepare_incoming_record(
    spec: TableSpec,
    data: Dict[str, Any],
    encryption: Optional[EncryptionService],
) -> Dict[str, Any]:
    """
    Decrypts `data_cipher_text` back into the sensitive fields, then validates and filters the
    record to its table variant.

    Raises:
        DecryptionError: The blob could not be decrypted; callers skip this record.
        RecordValidationError: The record does not fit the table.
    """
    incoming = dict(data)
    cipher_text = incoming.pop(CIPHER_FIELD, None)
    if cipher_text:
        if encryption is None or not encryption.is_ready():
            raise DecryptionError(f"No encryption available to decrypt {spec.sync_name} record {incoming.get('uuid')}")
        try:
            decrypted = await encryption.decrypt_payload(cipher_text)
        except DecryptionError:
            raise
        except Exception as e:
            raise DecryptionError(f"Decrypting {spec.sync_name} record {incoming.get('uuid')} failed: {e}") from e
        if not isinstance(decrypted, dict):
            raise DecryptionError(f"Cipher blob of {spec.sync_name} record {incoming.get('uuid')} is not an object")
        for name in spec.sensitive_fields:
            if name in decrypted:
                incoming[name] = decrypted[name]
        ignored = set(decrypted) - set(spec.sensitive_fields)
        if ignored:
            logger.debug(f"Ignoring non-sensitive keys inside cipher blob of {incoming.get('uuid')}: {sorted(ignored)}")
    return spec.filter_record(incoming)

#
# End of Record_Transform.py
#######################################################################################################################
