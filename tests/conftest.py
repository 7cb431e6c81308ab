import json
import os
import struct
import tempfile

# Keep failure logs and request logs out of the working tree.
os.environ.setdefault("GATEWAY_LOG_DIR", tempfile.mkdtemp(prefix="gateway-logs-"))

import httpx
import pytest

from cursor_rotator import FingerprintCache, RotatingClient, UsageManager
from cursor_rotator.cursor_wire import FLAG_END_STREAM, _bytes_field

GOOD_TOKEN = "user_good_0123456789abcdefghijklmnopqrstuvwxyz"
BAD_TOKEN = "user_bad_9876543210zyxwvutsrqponmlkjihgfedcba"
OTHER_TOKEN = "user_other_abcdefghij0123456789ABCDEFGHIJ"


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FirstChoice:
    """Deterministic tie-break: always the first tied candidate."""

    def __init__(self):
        self.calls = []

    def choice(self, seq):
        self.calls.append(list(seq))
        return seq[0]


def text_envelope(text: str) -> bytes:
    payload = _bytes_field(1, text.encode("utf-8"))
    return struct.pack(">BI", 0, len(payload)) + payload


def end_stream_envelope(data) -> bytes:
    payload = json.dumps(data).encode("utf-8")
    return struct.pack(">BI", FLAG_END_STREAM, len(payload)) + payload


def upstream_body(*texts: str) -> bytes:
    return b"".join(text_envelope(t) for t in texts) + end_stream_envelope({})


def error_body(message: str = "Not logged in") -> bytes:
    return end_stream_envelope({"error": {"code": "unauthenticated", "message": message}})


def bearer(request: httpx.Request) -> str:
    return request.headers["authorization"][len("Bearer "):]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def rng():
    return FirstChoice()


@pytest.fixture
def usage_manager(clock, rng):
    return UsageManager(clock=clock, rng=rng)


@pytest.fixture
def make_client(usage_manager):
    """Builds a RotatingClient whose upstream is the given request handler."""

    created = []

    def factory(handler, **kwargs):
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        client = RotatingClient(
            usage_manager=usage_manager,
            fingerprint_cache=kwargs.pop("fingerprint_cache", FingerprintCache()),
            http_client=http_client,
            **kwargs,
        )
        created.append(client)
        return client

    return factory
