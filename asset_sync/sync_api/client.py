# asset_sync/sync_api/client.py
#
#
# Imports
import json
from typing import Optional, Dict, Any, List
#
# 3rd-party Libraries
import httpx
from loguru import logger
#
# Local Imports
from .schemas import (
    SyncResponse, GetChangesResponse, FullSyncResponse, TableInfo,
    StartFullSyncResponse, FullSyncBatchResponse,
)
from .exceptions import APIConnectionError, APIRequestError, APIResponseError, AuthenticationError
from .utils import build_base_url, encode_json_body, unwrap_envelope
#
########################################################################################################################
#
# Functions:

class SyncAPIClient:
    """
    Async client for the remote sync service.

    Every call returns the unwrapped `data` of the service's `{code, data, ts}` envelope,
    parsed into the matching schema. Connectivity failures surface as `APIConnectionError`.
    """

    def __init__(
        self,
        server_url: str,
        device_id: str,
        token: Optional[str] = None,
        api_version: Optional[str] = "v1",
        timeout: float = 15.0,
        compression_enabled: bool = True,
        compression_threshold_bytes: int = 1024,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = build_base_url(server_url, api_version)
        self.device_id = device_id
        self.token = token
        self.timeout = timeout
        self.compression_enabled = compression_enabled
        self.compression_threshold_bytes = compression_threshold_bytes
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_config(cls, config, device_id: str, transport: Optional[httpx.AsyncBaseTransport] = None) -> "SyncAPIClient":
        return cls(
            server_url=config.server_url,
            device_id=device_id,
            token=config.auth_token,
            api_version=config.api_version,
            timeout=config.request_timeout,
            compression_enabled=config.compression_enabled,
            compression_threshold_bytes=config.compression_threshold_bytes,
            transport=transport,
        )

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            headers = {"X-Device-ID": self.device_id}
            if self.token:
                headers["Authorization"] = f"Bearer {self.token}"
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=self.timeout,
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    async def close(self):
        if self._client and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    async def _request(
        self,
        method: str,
        endpoint: str,
        json_body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        compress: bool = False,
    ) -> Any:
        client = await self._get_client()
        url = f"{self.base_url}{endpoint}"

        content = None
        headers = None
        if json_body is not None:
            content, headers = encode_json_body(
                json_body,
                compression_enabled=compress and self.compression_enabled,
                threshold_bytes=self.compression_threshold_bytes,
            )
            if "Content-Encoding" in headers:
                logger.debug(f"Compressed request body for {endpoint} to {len(content)} bytes")

        try:
            response = await client.request(method, endpoint, content=content, headers=headers, params=params)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            error_detail = str(e)
            response_data = None
            try:
                response_data = e.response.json()
                if isinstance(response_data, dict):
                    if isinstance(response_data.get("detail"), str):
                        error_detail = response_data["detail"]
                    elif isinstance(response_data.get("data"), dict) and response_data["data"].get("message"):
                        error_detail = response_data["data"]["message"]
                    elif isinstance(response_data.get("message"), str):
                        error_detail = response_data["message"]
            except ValueError:
                pass  # body was not JSON

            if e.response.status_code == 401:
                raise AuthenticationError(f"Authentication failed: {error_detail}")
            elif e.response.status_code == 422:
                raise APIRequestError(f"Validation Error: {error_detail}", response_data=response_data)
            raise APIResponseError(e.response.status_code, error_detail, response_data=response_data)
        except httpx.RequestError as e:  # ConnectError, TimeoutException, etc.
            raise APIConnectionError(f"Connection error to {url}: {e}") from e

        if not response.content:
            return None
        try:
            body = response.json()
        except json.JSONDecodeError:
            raise APIResponseError(response.status_code, "Failed to decode JSON response",
                                   response_data={"raw_text": response.text})
        return unwrap_envelope(response.status_code, body)

    # --- Device ---
    async def backup_init(self) -> Dict[str, Any]:
        data = await self._request("POST", "/sync/backup-init", json_body={"device_id": self.device_id})
        return data or {}

    # --- Incremental ---
    async def incremental_sync(self, table_name: str, records: List[Dict[str, Any]]) -> SyncResponse:
        payload = {"table_name": table_name, "data": records, "device_id": self.device_id}
        data = await self._request("POST", "/sync/incremental-sync", json_body=payload, compress=True)
        return SyncResponse.model_validate(data or {})

    async def get_changes(self, since: int = 0, limit: int = 100) -> GetChangesResponse:
        params = {"since": since, "limit": limit, "device_id": self.device_id}
        data = await self._request("GET", "/sync/changes", params=params)
        return GetChangesResponse.model_validate(data or {})

    # --- Whole table ---
    async def full_sync(self, table_name: str) -> FullSyncResponse:
        payload = {"table_name": table_name, "device_id": self.device_id}
        data = await self._request("POST", "/sync/full-sync", json_body=payload)
        return FullSyncResponse.model_validate(data or {})

    async def get_table_info(self, table_name: str) -> TableInfo:
        data = await self._request("GET", f"/sync/table-info/{table_name}")
        return TableInfo.model_validate(data or {})

    # --- Paginated full sync session ---
    async def start_full_sync(self, table_name: str, page_size: int = 100) -> StartFullSyncResponse:
        payload = {"table_name": table_name, "page_size": page_size}
        data = await self._request("POST", "/sync/full-sync/start", json_body=payload)
        return StartFullSyncResponse.model_validate(data or {})

    async def get_batch_data(self, session_id: str, page: int) -> FullSyncBatchResponse:
        payload = {"session_id": session_id, "page": page}
        data = await self._request("POST", "/sync/full-sync/batch", json_body=payload)
        return FullSyncBatchResponse.model_validate(data or {})

    async def finish_full_sync(self, session_id: str) -> None:
        await self._request("DELETE", f"/sync/full-sync/finish/{session_id}")

#
# End of asset_sync/sync_api/client.py
########################################################################################################################
