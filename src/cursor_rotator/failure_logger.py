import logging
import json
from logging.handlers import RotatingFileHandler
import os
from datetime import datetime, timezone
from typing import Optional

from .error_handler import UpstreamError, mask_credential

# Module-level state for resilience
_file_handler = None
_fallback_mode = False

LOG_DIR = os.getenv("GATEWAY_LOG_DIR", "logs")


class JsonFormatter(logging.Formatter):
    def format(self, record):
        # The message is already a dict, so we just format it as a JSON string
        return json.dumps(record.msg, ensure_ascii=False)


def _create_file_handler():
    """Create file handler with directory auto-recreation."""
    global _file_handler, _fallback_mode

    try:
        os.makedirs(LOG_DIR, exist_ok=True)
        handler = RotatingFileHandler(
            os.path.join(LOG_DIR, "failures.log"),
            maxBytes=5 * 1024 * 1024,  # 5 MB
            backupCount=2,
            delay=True,
        )
        handler.setFormatter(JsonFormatter())
        _file_handler = handler
        _fallback_mode = False
        return handler
    except OSError as e:
        logging.warning(f"Cannot create failure log file handler: {e}")
        _fallback_mode = True
        return None


def setup_failure_logger():
    """Sets up a dedicated JSON logger for writing detailed failure logs."""
    logger = logging.getLogger("failure_logger")
    logger.setLevel(logging.INFO)
    logger.propagate = False
    logger.handlers.clear()

    handler = _create_file_handler()
    if handler:
        logger.addHandler(handler)

    if not logger.handlers:
        logger.addHandler(logging.NullHandler())

    return logger


def _ensure_handler_valid():
    """Check if file handler is still valid, recreate if needed."""
    if _file_handler is None or _fallback_mode:
        handler = _create_file_handler()
        if handler:
            logger = logging.getLogger("failure_logger")
            logger.handlers.clear()
            logger.addHandler(handler)


failure_logger = setup_failure_logger()

main_lib_logger = logging.getLogger("cursor_rotator")


def log_failure(
    credential: str,
    model: str,
    attempt: int,
    error: Exception,
    raw_response_text: Optional[str] = None,
):
    """
    Logs a detailed failure record to failures.log and a concise summary to the main logger.

    Args:
        credential: The credential that was used for the attempt
        model: The model that was requested
        attempt: The attempt number (1-based)
        error: The exception describing the failure
        raw_response_text: The upstream text that carried the error, if any
    """
    global _fallback_mode

    raw_response = raw_response_text
    if raw_response is None and isinstance(error, UpstreamError):
        raw_response = error.raw

    detailed_log_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "credential": mask_credential(credential),
        "model": model,
        "attempt_number": attempt,
        "error_type": type(error).__name__,
        "error_message": str(error)[:5000],
        "raw_response": raw_response[:10000] if raw_response else None,
    }

    summary_message = (
        f"Upstream call failed for model {model} with credential {mask_credential(credential)} "
        f"(attempt {attempt}). Error: {type(error).__name__}. See failures.log for details."
    )

    _ensure_handler_valid()

    try:
        failure_logger.error(detailed_log_data)
    except OSError as e:
        _fallback_mode = True
        logging.error(f"Failed to write to failures.log: {e}")
        logging.error(f"Failure summary: {summary_message}")

    main_lib_logger.error(summary_message)
