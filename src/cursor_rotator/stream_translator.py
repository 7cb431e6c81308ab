import re
import json
import time
import uuid
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

lib_logger = logging.getLogger("cursor_rotator")

END_USER_MARKER = "<|END_USER|>"
DONE_EVENT = "data: [DONE]\n\n"

_PROMPT_ECHO_RE = re.compile(r"^.*" + re.escape(END_USER_MARKER), re.DOTALL)
_LEADING_ARTIFACT_RE = re.compile(r"^\n[a-zA-Z]?")


def zero_usage() -> Dict[str, int]:
    return {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0}


# --- Frames ---


@dataclass(frozen=True)
class ContentFrame:
    """A literal fragment of the assistant's reply."""

    text: str


@dataclass(frozen=True)
class ErrorFrame:
    """An error envelope from the upstream. `raw` is the text as received."""

    payload: Dict[str, Any] = field(default_factory=dict)
    raw: str = ""


Frame = Union[ContentFrame, ErrorFrame]


def parse_frame(text: str) -> Frame:
    """
    Classifies one decoded text unit.

    Only a JSON object with a truthy `error` key is an error; anything else,
    including JSON that is not an error envelope, is reply content. Each unit is
    judged on its own, nothing is buffered across units.
    """
    candidate = text.strip()
    if candidate.startswith("{") and candidate.endswith("}"):
        try:
            payload = json.loads(candidate)
        except json.JSONDecodeError:
            payload = None
        if isinstance(payload, dict) and payload.get("error"):
            return ErrorFrame(payload=payload, raw=text)
    return ContentFrame(text=text)


# --- Outbound records ---


def new_response_id() -> str:
    return f"chatcmpl-{uuid.uuid4()}"


def format_sse(data: Union[str, Dict[str, Any]]) -> str:
    if not isinstance(data, str):
        data = json.dumps(data, ensure_ascii=False)
    return f"data: {data}\n\n"


def build_stream_chunk(response_id: str, model: str, content: str) -> Dict[str, Any]:
    return {
        "id": response_id,
        "object": "chat.completion.chunk",
        "created": int(time.time()),
        "model": model,
        "choices": [{"index": 0, "delta": {"content": content}}],
        "usage": zero_usage(),
    }


def build_completion(model: str, content: str, response_id: Optional[str] = None) -> Dict[str, Any]:
    return {
        "id": response_id or new_response_id(),
        "object": "chat.completion",
        "created": int(time.time()),
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "finish_reason": "stop",
            }
        ],
        "usage": zero_usage(),
    }


def clean_completion_text(text: str) -> str:
    """
    Strips upstream formatting noise from an aggregated reply.

    1. Drop everything up to and including the last `<|END_USER|>` marker.
    2. Drop one leading newline and at most one letter right after it.
    3. Trim surrounding whitespace.
    """
    text = _PROMPT_ECHO_RE.sub("", text, count=1)
    text = _LEADING_ARTIFACT_RE.sub("", text, count=1)
    return text.strip()


class StreamTranslator:
    """
    Converts the frames of one upstream attempt into OpenAI-compatible output.

    In streaming mode every non-empty content frame becomes one SSE chunk event
    right away. In aggregate mode the text is buffered and turned into a single
    `chat.completion` when the stream ends; only this mode applies
    `clean_completion_text`.

    A new translator is created for every attempt, so a retried request never
    mixes buffered text from a failed credential into the answer.
    """

    def __init__(self, model: str, stream: bool):
        self.model = model
        self.stream = stream
        self.response_id = new_response_id()
        self._parts: List[str] = []

    @property
    def text(self) -> str:
        return "".join(self._parts)

    def feed(self, frame: ContentFrame) -> Optional[str]:
        """Returns the SSE event to send now, or None."""
        if not self.stream:
            self._parts.append(frame.text)
            return None
        if not frame.text:
            return None
        return format_sse(build_stream_chunk(self.response_id, self.model, frame.text))

    def finish(self) -> Union[str, Dict[str, Any]]:
        """Terminal output for a stream that ended without an error frame."""
        if self.stream:
            return DONE_EVENT
        return build_completion(self.model, clean_completion_text(self.text))

    def fail(self, frame: ErrorFrame) -> Union[str, Dict[str, Any]]:
        """Terminal output when an error frame arrived and no credential is left to retry with."""
        if self.stream:
            return format_sse(frame.raw)
        content = json.dumps(frame.payload, ensure_ascii=False, separators=(",", ":"))
        return build_completion(self.model, content)
