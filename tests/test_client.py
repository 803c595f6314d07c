"""End-to-end tests: descriptor -> filters -> httpx -> dispatch."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Any
from urllib.parse import parse_qsl

import httpx
import pytest
import respx

from restbind import (
    ApiFacade,
    BasicAuthentication,
    BearerTokenFilter,
    BuildError,
    ClientConfig,
    FilterError,
    FormParam,
    FormPayload,
    JsonSelector,
    Parsed,
    PathParam,
    RequestDescriptor,
    RequestTimeoutError,
    RestClient,
    RetryPolicy,
    ServerError,
    SessionToken,
    SessionTokenCache,
    TransportError,
    URIFromHeader,
    VOID_ON_NOT_FOUND,
)
from restbind.clients.http import redact_headers
from restbind.clients.pipeline import compose
from restbind.exceptions import AuthorizationError
from restbind.session import CacheState

BASE = "https://api.example.com"

DELETE_KEY = RequestDescriptor(
    name="keypair:delete",
    method="DELETE",
    path="/keypair/{name}",
    params=[PathParam("name", 0)],
    fallback=VOID_ON_NOT_FOUND,
)

GET_KEY = RequestDescriptor(
    name="keypair:get",
    method="GET",
    path="/keypair/{name}",
    params=[PathParam("name", 0)],
    response=Parsed(JsonSelector("name")),
)

CREATE_KEY = RequestDescriptor(
    name="keypair:create",
    method="POST",
    path="/keypair",
    form=[("Action", "CreateKeyPair")],
    params=[FormParam("KeyName", 0)],
    payload=FormPayload(),
    response=URIFromHeader(),
)


class Recorder:
    """MockTransport handler that records every request it receives."""

    def __init__(self, respond: Callable[[httpx.Request], httpx.Response]) -> None:
        self.respond = respond
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.respond(request)


def _client(handler: Callable[[httpx.Request], httpx.Response], **kwargs: Any) -> RestClient:
    filters = kwargs.pop("filters", ())
    config = ClientConfig(base_url=BASE, transport=httpx.MockTransport(handler), **kwargs)
    return RestClient(config, filters=filters)


def _echo_name(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"name": request.url.path.rsplit("/", 1)[-1]})


class Exploding:
    def filter(self, request: Any) -> Any:
        raise RuntimeError("boom")


# =============================================================================
# Single calls
# =============================================================================


def test_delete_with_basic_auth_returns_none_on_404() -> None:
    recorder = Recorder(lambda request: httpx.Response(404, text="no such key"))
    with _client(recorder, filters=[BasicAuthentication("user", "pass")]) as client:
        assert client.call(DELETE_KEY, "mykey") is None

    assert len(recorder.requests) == 1
    sent = recorder.requests[0]
    assert sent.method == "DELETE"
    assert str(sent.url) == "https://api.example.com/keypair/mykey"
    assert sent.headers["Authorization"] == "Basic dXNlcjpwYXNz"
    assert sent.headers["User-Agent"] == "restbind"
    assert sent.content == b""


def test_parsed_response() -> None:
    with _client(_echo_name) as client:
        assert client.invoke(GET_KEY, "gsg-keypair").result(timeout=5) == "gsg-keypair"


def test_errors_carry_the_originating_call() -> None:
    with _client(lambda request: httpx.Response(500, text="down")) as client:
        with pytest.raises(ServerError) as exc_info:
            client.call(GET_KEY, "mykey")
    assert exc_info.value.method == "GET"
    assert exc_info.value.url == "https://api.example.com/keypair/mykey"
    assert exc_info.value.body_excerpt == "down"


def test_build_errors_are_raised_before_anything_is_sent() -> None:
    recorder = Recorder(_echo_name)
    with _client(recorder) as client:
        with pytest.raises(BuildError, match="missing required argument"):
            client.invoke(GET_KEY)
    assert recorder.requests == []


def test_filter_failure_sends_nothing() -> None:
    recorder = Recorder(_echo_name)
    with _client(recorder, filters=[Exploding()]) as client:
        with pytest.raises(FilterError, match="Exploding failed"):
            client.call(GET_KEY, "mykey")
    assert recorder.requests == []


def test_descriptor_filters_run_after_client_filters() -> None:
    recorder = Recorder(_echo_name)
    descriptor = GET_KEY.with_filters(BasicAuthentication("descriptor", "wins"))
    with _client(recorder, filters=[BasicAuthentication("client", "loses")]) as client:
        client.call(descriptor, "mykey")
    assert recorder.requests[0].headers.get_list("Authorization") == [
        "Basic ZGVzY3JpcHRvcjp3aW5z"
    ]


def test_closed_client_rejects_calls() -> None:
    client = _client(_echo_name)
    client.close()
    client.close()
    with pytest.raises(RuntimeError, match="closed"):
        client.invoke(GET_KEY, "mykey")


# =============================================================================
# Sessions
# =============================================================================


def test_rejected_session_latches_and_stops_sending() -> None:
    recorder = Recorder(lambda request: httpx.Response(401, text="expired"))
    logins: list[int] = []

    def login() -> SessionToken:
        logins.append(1)
        return SessionToken(value="tok-1")

    cache = SessionTokenCache(login, login_timeout=None)
    with _client(recorder, filters=[BearerTokenFilter(cache)]) as client:
        with pytest.raises(AuthorizationError) as first:
            client.call(GET_KEY, "mykey")
        assert recorder.requests[0].headers["Authorization"] == "Bearer tok-1"
        assert cache.state is CacheState.FAILED

        with pytest.raises(AuthorizationError) as second:
            client.call(GET_KEY, "other")

    assert second.value is first.value
    assert len(recorder.requests) == 1
    assert len(logins) == 1


# =============================================================================
# Transport failures and timeouts
# =============================================================================


def test_transport_timeouts_are_mapped() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("read timed out", request=request)

    with _client(handler) as client:
        with pytest.raises(RequestTimeoutError) as exc_info:
            client.call(GET_KEY, "mykey")
    assert exc_info.value.method == "GET"
    assert isinstance(exc_info.value.__cause__, httpx.ReadTimeout)


def test_connection_failures_are_transport_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with _client(handler, filters=[]) as client:
        with pytest.raises(TransportError, match="connection refused"):
            client.call(DELETE_KEY, "mykey")


def test_timeouts_are_retried_per_policy() -> None:
    attempts: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(1)
        if len(attempts) < 3:
            raise httpx.ReadTimeout("read timed out", request=request)
        return _echo_name(request)

    with _client(handler, retry=RetryPolicy(max_attempts=3)) as client:
        assert client.call(GET_KEY, "mykey") == "mykey"
    assert len(attempts) == 3


def test_call_timeout() -> None:
    release = threading.Event()

    def handler(request: httpx.Request) -> httpx.Response:
        release.wait(5)
        return _echo_name(request)

    client = _client(handler)
    try:
        with pytest.raises(RequestTimeoutError, match="keypair:get did not complete"):
            client.call(GET_KEY, "mykey", timeout=0.05)
    finally:
        release.set()
        client.close()


# =============================================================================
# Fan-out
# =============================================================================


def test_fan_out_preserves_order() -> None:
    with _client(_echo_name, max_workers=4) as client:
        names = ["a", "b", "c", "d", "e"]
        assert client.fan_out(GET_KEY, names) == names
        assert client.fan_out(GET_KEY, [("x",), ("y",)]) == ["x", "y"]
        assert client.fan_out(GET_KEY, []) == []


def test_fan_out_raises_the_first_failure() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/b"):
            return httpx.Response(503)
        return _echo_name(request)

    with _client(handler) as client:
        with pytest.raises(ServerError) as exc_info:
            client.fan_out(GET_KEY, ["a", "b", "c"])
    assert exc_info.value.url == "https://api.example.com/keypair/b"


class KeyPairApi(ApiFacade):
    GET = GET_KEY
    DELETE = DELETE_KEY

    def get(self, name: str) -> str:
        return self._call(self.GET, name)

    def delete(self, name: str) -> None:
        self._call(self.DELETE, name)

    def get_all(self, names: list[str]) -> list[str]:
        return self._fan_out(self.GET, names)


def test_facade() -> None:
    with _client(_echo_name) as client:
        api = KeyPairApi(client)
        assert api.client is client
        assert api.get("one") == "one"
        assert api.delete("one") is None
        assert api.get_all(["p", "q"]) == ["p", "q"]


# =============================================================================
# Logging
# =============================================================================


def test_redact_headers() -> None:
    headers = [("Authorization", "Basic abc"), ("X-Trace", "1"), ("Cookie", "s=1")]
    assert redact_headers(headers) == [
        ("Authorization", "***"),
        ("X-Trace", "1"),
        ("Cookie", "***"),
    ]
    assert redact_headers({"X-Trace": "1"}, sensitive=["x-trace"]) == [("X-Trace", "***")]


def test_first_middleware_wraps_the_rest() -> None:
    seen: list[str] = []

    def tag(label: str) -> Any:
        def middleware(req: Any, next: Any) -> httpx.Response:
            seen.append(f"{label}:in")
            response = next(req)
            seen.append(f"{label}:out")
            return response

        return middleware

    def terminal(req: Any) -> httpx.Response:
        seen.append("send")
        return httpx.Response(204)

    pipeline = compose([tag("outer"), tag("inner")], terminal)
    assert pipeline("req").status_code == 204
    assert seen == ["outer:in", "inner:in", "send", "inner:out", "outer:out"]
    assert compose([], terminal)("req").status_code == 204


def test_request_logging_never_shows_credentials(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.DEBUG, logger="restbind.clients.http")
    with _client(
        _echo_name, log_requests=True, filters=[BasicAuthentication("user", "pass")]
    ) as client:
        client.call(GET_KEY, "mykey")

    messages = [record.getMessage() for record in caplog.records]
    assert "GET https://api.example.com/keypair/mykey -> 200" in messages
    assert any(
        record.levelno == logging.INFO and record.getMessage().startswith("GET ")
        for record in caplog.records
    )
    assert "dXNlcjpwYXNz" not in caplog.text


# =============================================================================
# respx
# =============================================================================


def test_form_post_over_the_default_transport(respx_mock: respx.MockRouter) -> None:
    route = respx_mock.post("https://api.example.com/keypair").mock(
        return_value=httpx.Response(201, headers={"Location": "/keypair/new-key"})
    )
    with RestClient(ClientConfig(base_url=BASE)) as client:
        location = client.call(CREATE_KEY, "new-key")

    assert location == httpx.URL("https://api.example.com/keypair/new-key")
    sent = route.calls.last.request
    assert sent.headers["Content-Type"] == "application/x-www-form-urlencoded"
    assert parse_qsl(sent.content.decode()) == [
        ("Action", "CreateKeyPair"),
        ("KeyName", "new-key"),
    ]
