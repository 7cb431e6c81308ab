import asyncio
import json

import httpx
import pytest

from cursor_rotator import RotatingClient
from cursor_rotator.config import GatewayConfig
from cursor_rotator.error_handler import NoAvailableKeysError, UnsupportedModeError
from cursor_rotator.fingerprint import FingerprintCache
from cursor_rotator.usage_manager import BLACKLIST_DURATION_SECONDS

from conftest import BAD_TOKEN, GOOD_TOKEN, OTHER_TOKEN, bearer, error_body, upstream_body

MESSAGES = [{"role": "user", "content": "What is the answer?"}]


async def _collect(generator):
    return [event async for event in generator]


def _stream(client, credentials, model="gpt-4o", **kwargs):
    return asyncio.run(
        _collect(client.acompletion(model=model, messages=MESSAGES, credentials=credentials, stream=True, **kwargs))
    )


def _complete(client, credentials, model="gpt-4o", **kwargs):
    return asyncio.run(client.acompletion(model=model, messages=MESSAGES, credentials=credentials, **kwargs))


def test_streaming_single_credential(make_client):
    calls = []

    def handler(request):
        calls.append(bearer(request))
        return httpx.Response(200, content=upstream_body("Hello", " world"))

    client = make_client(handler)
    events = _stream(client, f"Bearer {GOOD_TOKEN}")

    assert calls == [GOOD_TOKEN]
    assert len(events) == 3
    chunks = [json.loads(e[len("data: "):]) for e in events[:2]]
    assert [c["choices"][0]["delta"]["content"] for c in chunks] == ["Hello", " world"]
    assert chunks[0]["id"] == chunks[1]["id"]
    assert events[2] == "data: [DONE]\n\n"


def test_retry_blacklists_failed_credential(make_client, usage_manager, clock):
    calls = []

    def handler(request):
        token = bearer(request)
        calls.append(token)
        if token == BAD_TOKEN:
            return httpx.Response(200, content=error_body())
        return httpx.Response(200, content=upstream_body("junk<|END_USER|>", "\nAThe answer"))

    client = make_client(handler)
    completion = _complete(client, f"{BAD_TOKEN},{GOOD_TOKEN}")

    assert calls == [BAD_TOKEN, GOOD_TOKEN]
    assert completion["choices"][0]["message"]["content"] == "The answer"
    assert usage_manager.get_usage(BAD_TOKEN) == 1
    assert usage_manager.get_usage(GOOD_TOKEN) == 1

    clock.advance(BLACKLIST_DURATION_SECONDS - 60)
    assert list(client.build_pool(f"{BAD_TOKEN},{GOOD_TOKEN}")) == [GOOD_TOKEN]

    clock.advance(60)
    assert list(client.build_pool(f"{BAD_TOKEN},{GOOD_TOKEN}")) == [BAD_TOKEN, GOOD_TOKEN]


def test_streaming_retry_starts_a_new_event_stream(make_client):
    def handler(request):
        if bearer(request) == BAD_TOKEN:
            return httpx.Response(200, content=error_body())
        return httpx.Response(200, content=upstream_body("ok"))

    client = make_client(handler)
    events = _stream(client, f"{BAD_TOKEN},{GOOD_TOKEN}")

    assert len(events) == 2
    assert json.loads(events[0][len("data: "):])["choices"][0]["delta"]["content"] == "ok"
    assert events[1] == "data: [DONE]\n\n"


def test_exhausted_pool_returns_upstream_error(make_client, usage_manager):
    calls = []

    def handler(request):
        calls.append(bearer(request))
        return httpx.Response(200, content=error_body("Not logged in"))

    client = make_client(handler)
    completion = _complete(client, f"{BAD_TOKEN},{GOOD_TOKEN},{OTHER_TOKEN}")

    assert len(calls) == 3
    assert sorted(calls) == sorted([BAD_TOKEN, GOOD_TOKEN, OTHER_TOKEN])
    content = json.loads(completion["choices"][0]["message"]["content"])
    assert content["error"]["message"] == "Not logged in"
    for token in (BAD_TOKEN, GOOD_TOKEN, OTHER_TOKEN):
        assert not usage_manager.is_available(token)


def test_exhausted_pool_streams_raw_error(make_client):
    raw = error_body("quota exceeded")

    def handler(request):
        return httpx.Response(200, content=raw)

    client = make_client(handler)
    events = _stream(client, BAD_TOKEN)

    assert len(events) == 1
    assert "[DONE]" not in events[0]
    payload = json.loads(events[0][len("data: "):])
    assert payload["error"]["message"] == "quota exceeded"


def test_no_usable_credentials_never_calls_upstream(make_client, usage_manager):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, content=upstream_body("unused"))

    client = make_client(handler)
    usage_manager.blacklist(BAD_TOKEN)

    with pytest.raises(NoAvailableKeysError):
        client.acompletion(model="gpt-4o", messages=MESSAGES, credentials=BAD_TOKEN)
    with pytest.raises(NoAvailableKeysError):
        client.acompletion(model="gpt-4o", messages=MESSAGES, credentials=None, stream=True)
    assert calls == []


def test_reserved_model_stream_is_rejected_before_selection(make_client, usage_manager, rng):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, content=upstream_body("unused"))

    client = make_client(handler)
    with pytest.raises(UnsupportedModeError):
        client.acompletion(model="o1-mini", messages=MESSAGES, credentials=f"{BAD_TOKEN},{GOOD_TOKEN}", stream=True)
    with pytest.raises(ValueError):
        client.acompletion(model="", messages=MESSAGES, credentials=GOOD_TOKEN)

    assert calls == []
    assert rng.calls == []
    assert usage_manager.get_usage(BAD_TOKEN) == 0


def test_reserved_model_without_stream_is_relayed(make_client):
    def handler(request):
        return httpx.Response(200, content=upstream_body("thinking done"))

    client = make_client(handler)
    completion = _complete(client, GOOD_TOKEN, model="o1-mini")
    assert completion["choices"][0]["message"]["content"] == "thinking done"


def test_usage_is_counted_before_the_network_call(make_client, usage_manager):
    seen = []

    def handler(request):
        seen.append(usage_manager.get_usage(bearer(request)))
        return httpx.Response(200, content=upstream_body("ok"))

    client = make_client(handler)
    _complete(client, GOOD_TOKEN)
    _complete(client, GOOD_TOKEN)
    assert seen == [1, 2]


def test_least_used_credential_is_chosen(make_client, usage_manager):
    calls = []

    def handler(request):
        calls.append(bearer(request))
        return httpx.Response(200, content=upstream_body("ok"))

    client = make_client(handler)
    usage_manager.record_attempt(BAD_TOKEN)
    _complete(client, f"{BAD_TOKEN},{GOOD_TOKEN}")
    _complete(client, f"{BAD_TOKEN},{GOOD_TOKEN}")
    _complete(client, f"{BAD_TOKEN},{GOOD_TOKEN}")
    # GOOD first (least used), then a tie broken towards the first candidate, then GOOD again.
    assert calls == [GOOD_TOKEN, BAD_TOKEN, GOOD_TOKEN]


def test_fingerprint_header_is_stable_per_credential(make_client):
    checksums = []

    def handler(request):
        checksums.append(request.headers["x-cursor-checksum"])
        return httpx.Response(200, content=upstream_body("ok"))

    client = make_client(handler, fingerprint_cache=FingerprintCache(default_checksum="zo-default"))
    _complete(client, GOOD_TOKEN, checksum="zo-request")
    _complete(client, GOOD_TOKEN, checksum="zo-ignored")
    _complete(client, OTHER_TOKEN)
    assert checksums == ["zo-request", "zo-request", "zo-default"]


def test_upstream_request_shape(make_client):
    captured = []

    def handler(request):
        captured.append(request)
        return httpx.Response(200, content=upstream_body("ok"))

    client = make_client(handler, upstream_url="https://upstream.test/StreamChat", timezone="UTC")
    _complete(client, f"label::{GOOD_TOKEN}")

    request = captured[0]
    assert request.method == "POST"
    assert str(request.url) == "https://upstream.test/StreamChat"
    assert request.headers["authorization"] == f"Bearer {GOOD_TOKEN}"
    assert request.headers["content-type"] == "application/connect+proto"
    assert request.headers["x-cursor-timezone"] == "UTC"
    assert b"What is the answer?" in request.content


def test_transport_errors_do_not_blacklist(make_client, usage_manager):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = make_client(handler)
    with pytest.raises(httpx.ConnectError):
        _complete(client, f"{BAD_TOKEN},{GOOD_TOKEN}")

    assert usage_manager.is_available(BAD_TOKEN)
    assert usage_manager.is_available(GOOD_TOKEN)
    assert usage_manager.get_usage(BAD_TOKEN) + usage_manager.get_usage(GOOD_TOKEN) == 1


def test_http_client_errors_rotate_credentials(make_client, usage_manager):
    def handler(request):
        if bearer(request) == BAD_TOKEN:
            return httpx.Response(401, json={"code": "unauthenticated", "message": "bad token"})
        return httpx.Response(200, content=upstream_body("ok"))

    client = make_client(handler)
    completion = _complete(client, f"{BAD_TOKEN},{GOOD_TOKEN}")
    assert completion["choices"][0]["message"]["content"] == "ok"
    assert not usage_manager.is_available(BAD_TOKEN)


def test_http_client_error_payload_when_exhausted(make_client):
    def handler(request):
        return httpx.Response(403, text="forbidden")

    client = make_client(handler)
    completion = _complete(client, BAD_TOKEN)
    content = json.loads(completion["choices"][0]["message"]["content"])
    assert content == {"error": {"message": "forbidden", "code": 403}}


def test_http_server_errors_do_not_blacklist(make_client, usage_manager):
    def handler(request):
        return httpx.Response(502, text="bad gateway")

    client = make_client(handler)
    with pytest.raises(httpx.HTTPStatusError):
        _complete(client, BAD_TOKEN)
    assert usage_manager.is_available(BAD_TOKEN)


def test_configured_default_fingerprint_reaches_upstream():
    checksums = []

    def handler(request):
        checksums.append(request.headers["x-cursor-checksum"])
        return httpx.Response(200, content=upstream_body("ok"))

    client = RotatingClient.from_config(
        GatewayConfig(default_checksum="zo-configured"),
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    _complete(client, GOOD_TOKEN)
    assert checksums == ["zo-configured"]


def test_injected_empty_registries_are_kept(usage_manager):
    cache = FingerprintCache(default_checksum="zo-default")
    client = RotatingClient(usage_manager=usage_manager, fingerprint_cache=cache)
    assert client.fingerprint_cache is cache
    assert client.usage_manager is usage_manager
    asyncio.run(client.close())


def test_pool_emptied_by_another_request_mid_retry(make_client, usage_manager):
    def handler(request):
        # Another request blacklists GOOD while BAD's attempt is in flight.
        usage_manager.blacklist(GOOD_TOKEN)
        return httpx.Response(200, content=error_body())

    client = make_client(handler)
    with pytest.raises(NoAvailableKeysError):
        _complete(client, f"{BAD_TOKEN},{GOOD_TOKEN}")
    assert usage_manager.get_usage(GOOD_TOKEN) == 0
