from typing import Any, Dict, Optional

import httpx


class NoAvailableKeysError(Exception):
    """Raised when no usable credential remains for a request."""

    pass


class UnsupportedModeError(ValueError):
    """Raised when streaming is requested for a model family that does not support it."""

    pass


class UpstreamError(Exception):
    """
    An error envelope received from the upstream stream.

    `payload` is the parsed envelope (it always carries an `error` key) and `raw`
    is the decoded text exactly as it arrived, which is what callers get back
    once every credential has failed.
    """

    def __init__(self, message: str, payload: Optional[Dict[str, Any]] = None, raw: str = ""):
        super().__init__(message)
        self.payload = payload or {}
        self.raw = raw

    @property
    def error_message(self) -> str:
        error = self.payload.get("error")
        if isinstance(error, dict):
            return error.get("message") or str(error)
        return str(error)


def mask_credential(credential: str, visible: int = 10) -> str:
    """
    Mask a credential for safe display in logs.

    Shows the first and last `visible` characters (e.g. "eyJhbGciOi...Xk2pQw9zLm").
    Values too short to hide anything are fully masked.
    """
    if not credential or len(credential) <= visible * 2:
        return "***"
    return f"{credential[:visible]}...{credential[-visible:]}"


def is_transport_error(e: Exception) -> bool:
    """Checks if the exception is a network-level failure rather than an upstream answer."""
    return isinstance(e, (httpx.TimeoutException, httpx.ConnectError, httpx.NetworkError))
