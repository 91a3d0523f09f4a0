# asset_sync/sync_api/utils.py
#
#
# Imports
import gzip
import json
from typing import Dict, Any, Optional, Tuple
#
# 3rd-party Libraries
from pydantic import BaseModel
#
# Local Imports
from .exceptions import APIResponseError
#
#######################################################################################################################
#
# Functions:

def build_base_url(server_url: str, api_version: Optional[str]) -> str:
    """`http://host:8080/` + `v1` -> `http://host:8080/v1`"""
    base = server_url.rstrip('/')
    if api_version:
        base = f"{base}/{api_version.strip('/')}"
    return base


def model_to_payload(model_instance: BaseModel) -> Dict[str, Any]:
    """Dumps a pydantic model for a JSON body, dropping unset optionals."""
    return model_instance.model_dump(exclude_none=True, by_alias=False)


def encode_json_body(
    payload: Dict[str, Any],
    compression_enabled: bool = True,
    threshold_bytes: int = 1024,
) -> Tuple[bytes, Dict[str, str]]:
    """
    Serializes `payload` to JSON, gzip-compressing it when it is larger than `threshold_bytes`.

    Returns:
        The request body and the headers describing it.
    """
    raw = json.dumps(payload, default=str, ensure_ascii=False).encode("utf-8")
    headers = {"Content-Type": "application/json"}
    if compression_enabled and len(raw) > threshold_bytes:
        headers["Content-Encoding"] = "gzip"
        return gzip.compress(raw), headers
    return raw, headers


def unwrap_envelope(status_code: int, body: Any) -> Any:
    """
    The service answers `{code, data, ts}`. A 2xx `code` yields `data`; anything else raises
    with the server's message. Bodies without an envelope are returned unchanged.
    """
    if not isinstance(body, dict) or "code" not in body or "data" not in body:
        return body
    code = body.get("code")
    try:
        code_value = int(code)
    except (TypeError, ValueError):
        raise APIResponseError(status_code, f"Malformed envelope code: {code!r}", response_data=body)
    data = body.get("data")
    if 200 <= code_value < 300:
        return data
    message = data.get("message") if isinstance(data, dict) else None
    raise APIResponseError(code_value, message or "Request failed", response_data=body)

#
# End of asset_sync/sync_api/utils.py
#######################################################################################################################
