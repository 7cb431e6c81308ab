import logging
from datetime import datetime
from typing import Any, Dict, Tuple


def log_request_to_console(
    url: str, client_info: Tuple[str, int], request_data: Dict[str, Any], credential_count: int
):
    """
    Logs a concise, single-line summary of an incoming request to the console.
    """
    time_str = datetime.now().strftime("%H:%M")
    model = request_data.get("model", "N/A")
    mode = "stream" if request_data.get("stream") else "non-stream"
    message_count = len(request_data.get("messages") or [])

    log_message = (
        f"{time_str} - {client_info[0]}:{client_info[1]} - model: {model} ({mode}), "
        f"messages: {message_count}, credentials: {credential_count} - {url}"
    )
    logging.info(log_message)
