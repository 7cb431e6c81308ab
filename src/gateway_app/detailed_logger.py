# src/gateway_app/detailed_logger.py
"""
Per-request transaction logs, written when --enable-request-logging is set.

Directory structure:
    logs/completions/YYYYMMDD_HHMMSS_{request_id}/
        request.json              # Inbound request (credentials masked)
        streaming_chunks.jsonl    # If streaming mode
        final_response.json       # Status code and response body
        metadata.json             # Timing and model
"""

import json
import os
import time
import uuid
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import aiofiles

from cursor_rotator.credential_manager import parse_authorization
from cursor_rotator.error_handler import mask_credential

LOGS_DIR = Path(os.getenv("GATEWAY_LOG_DIR", "logs"))
COMPLETIONS_LOGS_DIR = LOGS_DIR / "completions"


def _mask_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    masked = {}
    for key, value in headers.items():
        if key.lower() == "authorization":
            value = ",".join(mask_credential(c) for c in parse_authorization(value))
        masked[key] = value
    return masked


class DetailedLogger:
    """Writes the request, streamed chunks and final response of one completion to disk."""

    def __init__(self, base_dir: Optional[Path] = None):
        self.start_time = time.time()
        self.request_id = uuid.uuid4().hex[:8]
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        self.log_dir = Path(base_dir or COMPLETIONS_LOGS_DIR) / f"{timestamp}_{self.request_id}"
        self.model: Optional[str] = None
        self.chunk_count = 0

    async def _write(self, filename: str, text: str, mode: str = "w"):
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(self.log_dir / filename, mode, encoding="utf-8") as f:
                await f.write(text)
        except OSError as e:
            logging.error(f"Failed to write request log '{filename}': {e}")

    async def log_request(self, headers: Mapping[str, str], body: Dict[str, Any]):
        self.model = body.get("model") if isinstance(body, dict) else None
        data = {"headers": _mask_headers(headers), "body": body}
        await self._write("request.json", json.dumps(data, indent=2, ensure_ascii=False))

    async def log_stream_chunk(self, chunk: Dict[str, Any]):
        self.chunk_count += 1
        await self._write("streaming_chunks.jsonl", json.dumps(chunk, ensure_ascii=False) + "\n", mode="a")

    async def log_final_response(self, status_code: int, body: Any):
        data = {"status_code": status_code, "body": body}
        await self._write("final_response.json", json.dumps(data, indent=2, ensure_ascii=False))
        metadata = {
            "request_id": self.request_id,
            "model": self.model,
            "status_code": status_code,
            "duration_ms": int((time.time() - self.start_time) * 1000),
            "streamed_chunks": self.chunk_count,
        }
        await self._write("metadata.json", json.dumps(metadata, indent=2))
