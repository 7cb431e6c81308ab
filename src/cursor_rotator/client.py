import json
import logging
from contextlib import aclosing
from typing import Any, AsyncGenerator, Dict, List, Optional, Union

import httpx

lib_logger = logging.getLogger("cursor_rotator")
# Silent until a RotatingClient is created with configure_logging=True,
# which hands records to the root logger set up in main.py.
lib_logger.propagate = False

from .usage_manager import UsageManager
from .fingerprint import FingerprintCache
from .failure_logger import log_failure
from .credential_manager import CredentialPool
from .error_handler import (
    NoAvailableKeysError,
    UnsupportedModeError,
    UpstreamError,
    is_transport_error,
    mask_credential,
)
from .cursor_wire import (
    DEFAULT_CLIENT_VERSION,
    DEFAULT_TIMEZONE,
    UPSTREAM_URL,
    EnvelopeDecoder,
    build_upstream_headers,
    encode_chat_request,
)
from .stream_translator import ErrorFrame, Frame, StreamTranslator, parse_frame
from .config import RESERVED_MODEL_PREFIX, GatewayConfig


def _error_frame_from_status(status_code: int, body: bytes) -> ErrorFrame:
    """Wraps a rejected HTTP response so it follows the same path as a streamed error envelope."""
    text = body.decode("utf-8", errors="replace")
    frame = parse_frame(text)
    if isinstance(frame, ErrorFrame):
        return frame
    try:
        detail = json.loads(text)
    except json.JSONDecodeError:
        detail = text
    if not isinstance(detail, dict):
        detail = {"message": detail}
    detail.setdefault("code", status_code)
    payload = {"error": detail}
    return ErrorFrame(payload=payload, raw=json.dumps(payload, ensure_ascii=False))


class RotatingClient:
    """
    Relays chat completions to the upstream, rotating across the caller's
    credentials and retrying when one of them is rejected.
    """

    def __init__(
        self,
        usage_manager: Optional[UsageManager] = None,
        fingerprint_cache: Optional[FingerprintCache] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        upstream_url: str = UPSTREAM_URL,
        client_version: str = DEFAULT_CLIENT_VERSION,
        timezone: str = DEFAULT_TIMEZONE,
        instruction: str = "",
        timeout: Optional[float] = None,
        reserved_model_prefix: str = RESERVED_MODEL_PREFIX,
        configure_logging: bool = True,
    ):
        if configure_logging:
            # When True, this allows logs from this library to be handled
            # by the parent application's logging configuration.
            lib_logger.propagate = True
            if lib_logger.hasHandlers():
                lib_logger.handlers.clear()
                lib_logger.addHandler(logging.NullHandler())
        else:
            lib_logger.propagate = False

        self.usage_manager = usage_manager if usage_manager is not None else UsageManager()
        self.fingerprint_cache = (
            fingerprint_cache if fingerprint_cache is not None else FingerprintCache()
        )
        self._owns_http_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=timeout)
        self.upstream_url = upstream_url
        self.client_version = client_version
        self.timezone = timezone
        self.instruction = instruction
        self.reserved_model_prefix = reserved_model_prefix

    @classmethod
    def from_config(cls, config: GatewayConfig, **kwargs) -> "RotatingClient":
        return cls(
            usage_manager=UsageManager(blacklist_duration=config.blacklist_duration),
            fingerprint_cache=FingerprintCache(default_checksum=config.default_checksum),
            upstream_url=config.upstream_url,
            client_version=config.client_version,
            timezone=config.timezone,
            instruction=config.instruction,
            timeout=config.upstream_timeout,
            reserved_model_prefix=config.reserved_model_prefix,
            **kwargs,
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        """Close the HTTP client if this instance created it."""
        if self._owns_http_client and not self.http_client.is_closed:
            await self.http_client.aclose()

    # --- Request validation ---

    def validate_request(self, model: Optional[str], stream: bool = False) -> None:
        """Rejects requests that must never reach the upstream."""
        if not model or not isinstance(model, str):
            raise ValueError("'model' is a required parameter.")
        if stream and self.reserved_model_prefix and model.startswith(self.reserved_model_prefix):
            raise UnsupportedModeError("Model not supported stream")

    def build_pool(self, authorization: Optional[str]) -> CredentialPool:
        return CredentialPool.from_authorization(authorization, self.usage_manager)

    # --- Dispatch ---

    def _log_pool_state(self, pool: CredentialPool, credential: str):
        lib_logger.debug("=== Credential usage ===")
        for cred, count in self.usage_manager.usage_snapshot(pool).items():
            lib_logger.debug(f"Credential {mask_credential(cred)}: {count} attempts")
        lib_logger.info(
            f"Using credential {mask_credential(credential)}. Available credentials: {len(pool)}"
        )

    async def _read_frames(self, response: httpx.Response) -> AsyncGenerator[Frame, None]:
        """Yields classified frames from an open upstream response."""
        if response.status_code >= 400:
            body = await response.aread()
            if response.status_code >= 500:
                response.raise_for_status()
            yield _error_frame_from_status(response.status_code, body)
            return

        decoder = EnvelopeDecoder()
        async for chunk in response.aiter_bytes():
            for text in decoder.feed(chunk):
                yield parse_frame(text)
        if decoder.pending:
            lib_logger.warning(
                f"Upstream stream closed with {decoder.pending} bytes of an incomplete message."
            )

    async def _dispatch(
        self,
        pool: CredentialPool,
        model: str,
        messages: List[Dict[str, Any]],
        stream: bool,
        checksum: Optional[str] = None,
    ) -> AsyncGenerator[Union[str, Dict[str, Any]], None]:
        """
        Runs attempts until one succeeds or the pool is exhausted.

        Yields SSE strings in streaming mode, or exactly one completion dict in
        aggregate mode. Each failed attempt removes one credential from the pool,
        so there are at most `pool.initial_size` attempts.
        """
        max_attempts = pool.initial_size
        for attempt in range(1, max_attempts + 1):
            credential = pool.select()
            self._log_pool_state(pool, credential)
            self.usage_manager.record_attempt(credential)

            fingerprint = self.fingerprint_cache.get(credential, override=checksum)
            headers = build_upstream_headers(
                credential, fingerprint, self.client_version, self.timezone
            )
            body = encode_chat_request(messages, model, instruction=self.instruction)
            translator = StreamTranslator(model, stream)
            error_frame: Optional[ErrorFrame] = None

            try:
                async with self.http_client.stream(
                    "POST", self.upstream_url, headers=headers, content=body
                ) as response:
                    async with aclosing(self._read_frames(response)) as frames:
                        async for frame in frames:
                            if isinstance(frame, ErrorFrame):
                                error_frame = frame
                                break
                            event = translator.feed(frame)
                            if event is not None:
                                yield event
            except Exception as e:
                if is_transport_error(e):
                    # Not the credential's fault; it stays in rotation.
                    lib_logger.warning(
                        f"Transport error with credential {mask_credential(credential)}: "
                        f"{type(e).__name__}. Not blacklisting."
                    )
                raise

            if error_frame is None:
                lib_logger.info(
                    f"Request finished with credential {mask_credential(credential)} "
                    f"after {attempt} attempt(s)."
                )
                yield translator.finish()
                return

            error = UpstreamError(
                "Upstream error received in stream", payload=error_frame.payload, raw=error_frame.raw
            )
            log_failure(credential, model, attempt, error)
            pool.discard(credential)

            if len(pool) > 0:
                lib_logger.info(
                    f"Credential {mask_credential(credential)} rejected: {error.error_message}. "
                    f"Retrying with another credential. Remaining credentials: {len(pool)}"
                )
                continue

            lib_logger.warning("No credentials left to retry with. Returning the upstream error.")
            yield translator.fail(error_frame)
            return

        # Every failed attempt shrinks the pool, so the loop returns before getting here.
        raise NoAvailableKeysError("No valid authorization tokens available")

    async def _aggregate(self, pool, model, messages, checksum) -> Dict[str, Any]:
        async with aclosing(self._dispatch(pool, model, messages, False, checksum)) as results:
            async for result in results:
                return result
        raise NoAvailableKeysError("No valid authorization tokens available")

    def acompletion(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        credentials: Union[str, CredentialPool, None],
        stream: bool = False,
        checksum: Optional[str] = None,
    ) -> Union[Any, AsyncGenerator[str, None]]:
        """
        Dispatcher for completion requests.

        Args:
            model: Upstream model name, echoed back in every response.
            messages: OpenAI-style chat messages.
            credentials: The raw authorization value, or a pool already built from it.
            stream: Whether to return an SSE generator instead of a completion.
            checksum: Per-request fingerprint override for credentials seen for the first time.

        Returns:
            An async generator of SSE strings when streaming, otherwise an awaitable
            that resolves to the completion dict.

        Raises:
            UnsupportedModeError, ValueError: For requests that must not be relayed.
            NoAvailableKeysError: When no credential survives the blacklist.
        """
        self.validate_request(model, stream)
        pool = credentials if isinstance(credentials, CredentialPool) else self.build_pool(credentials)

        if stream:
            return self._dispatch(pool, model, messages, True, checksum)
        return self._aggregate(pool, model, messages, checksum)
