# asset_sync/sync_api/exceptions.py
#
#
#######################################################################################################################
#
# Functions:

class SyncAPIError(Exception):
    """Base exception for sync_api errors."""
    pass

class APIConnectionError(SyncAPIError):
    """Raised for network or connection issues (server unreachable, refused, timed out)."""
    is_network_error = True

class APIRequestError(SyncAPIError):
    """Raised for errors in constructing or sending the request (e.g., bad data)."""
    def __init__(self, message: str, response_data: dict = None):
        super().__init__(message)
        self.response_data = response_data or {}

class APIResponseError(SyncAPIError):
    """Raised for non-2xx responses, non-2xx envelope codes, or issues parsing the response."""
    def __init__(self, status_code: int, message: str, response_data: dict = None):
        super().__init__(f"API Error {status_code}: {message}")
        self.status_code = status_code
        self.response_data = response_data or {}

class AuthenticationError(SyncAPIError):
    """Raised for authentication failures."""
    pass


def is_network_error(error: BaseException) -> bool:
    """True when `error` means the server could not be reached at all."""
    return bool(getattr(error, "is_network_error", False))

#
# End of asset_sync/sync_api/exceptions.py
########################################################################################################################
