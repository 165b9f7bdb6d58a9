# -*- coding: utf-8 -*-
import httpx
import pytest

from registry_mirror.lib.auth import AuthChallenge, AuthRelay, parse_www_authenticate
from registry_mirror.lib.errors import NetworkError, UpstreamProtocolError
from registry_mirror.lib.router import Upstream

from .conftest import DOCKER_CHALLENGE, FakeUpstream

DOCKER_HUB = Upstream(origin="https://registry-1.docker.io")
QUAY = Upstream(origin="https://quay.io")


def test_parse_docker_hub_challenge():
    challenge = parse_www_authenticate(DOCKER_CHALLENGE)
    assert challenge == AuthChallenge(
        scheme="Bearer",
        realm="https://auth.docker.io/token",
        service="registry.docker.io",
        params={"realm": "https://auth.docker.io/token", "service": "registry.docker.io"},
    )


def test_parse_challenge_with_spaces_scope_and_escapes():
    header = 'bearer  realm="https://ghcr.io/token", service="ghcr.io" ,scope="repository:a/b:pull",note="say \\"hi\\""'
    challenge = parse_www_authenticate(header)
    assert challenge.realm == "https://ghcr.io/token"
    assert challenge.service == "ghcr.io"
    assert challenge.params["scope"] == "repository:a/b:pull"
    assert challenge.params["note"] == 'say "hi"'


def test_parse_challenge_with_unquoted_values():
    challenge = parse_www_authenticate("Bearer realm=https://issuer.example/token,service=registry.example")
    assert challenge.realm == "https://issuer.example/token"
    assert challenge.service == "registry.example"


@pytest.mark.parametrize("header", [
    None,
    "",
    'Basic realm="Registry Realm"',
    'Bearer realm="https://auth.example/token"',
    'Bearer service="registry.example"',
    "Bearer",
])
def test_unusable_challenges_raise_protocol_error(header):
    with pytest.raises(UpstreamProtocolError):
        parse_www_authenticate(header)


def _registry(challenge=DOCKER_CHALLENGE, token_status=200):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v2/":
            headers = {"www-authenticate": challenge} if challenge else {}
            return httpx.Response(401, headers=headers, json={"errors": [{"code": "UNAUTHORIZED"}]})
        if request.url.path == "/token":
            return httpx.Response(token_status, json={"token": "t0k3n", "expires_in": 300})
        return httpx.Response(404)
    return FakeUpstream(handler)


@pytest.mark.asyncio
async def test_fetch_token_builds_issuer_url_and_rewrites_docker_hub_scope():
    upstream = _registry()
    async with httpx.AsyncClient(transport=upstream.transport) as client:
        resp = await AuthRelay(client).fetch_token(DOCKER_HUB, ["repository:nginx:pull"])

    assert resp.status_code == 200
    assert resp.json()["token"] == "t0k3n"
    anonymous, token_request = upstream.requests
    assert str(anonymous.url) == "https://registry-1.docker.io/v2/"
    assert "authorization" not in anonymous.headers
    assert token_request.url.host == "auth.docker.io"
    assert token_request.url.path == "/token"
    assert token_request.url.params["service"] == "registry.docker.io"
    assert token_request.url.params["scope"] == "repository:library/nginx:pull"
    assert "authorization" not in token_request.headers


@pytest.mark.asyncio
async def test_fetch_token_for_generic_issuer():
    upstream = _registry('Bearer realm="https://issuer.example/token",service="registry.example"')
    async with httpx.AsyncClient(transport=upstream.transport) as client:
        await AuthRelay(client).fetch_token(QUAY, ["repository:nginx:pull"], authorization="Basic dXNlcjpwYXNz")

    token_request = upstream.requests[-1]
    assert (token_request.url.scheme, token_request.url.host, token_request.url.path) == (
        "https", "issuer.example", "/token"
    )
    assert token_request.url.params.multi_items() == [
        ("service", "registry.example"),
        ("scope", "repository:nginx:pull"),
    ]
    assert token_request.headers["authorization"] == "Basic dXNlcjpwYXNz"


@pytest.mark.asyncio
async def test_fetch_token_without_scope_and_multiple_scopes():
    upstream = _registry()
    async with httpx.AsyncClient(transport=upstream.transport) as client:
        relay = AuthRelay(client)
        await relay.fetch_token(DOCKER_HUB, [])
        await relay.fetch_token(DOCKER_HUB, ["repository:nginx:pull", "repository:me/app:pull,push"])

    first_token, second_token = upstream.requests[1], upstream.requests[3]
    assert "scope" not in first_token.url.params
    assert first_token.url.params["service"] == "registry.docker.io"
    assert second_token.url.params.get_list("scope") == [
        "repository:library/nginx:pull",
        "repository:me/app:pull,push",
    ]


def test_build_token_url_keeps_existing_realm_query():
    relay = AuthRelay(client=None)
    challenge = AuthChallenge(scheme="Bearer", realm="https://issuer.example/token?account=x", service="svc")
    url = relay.build_token_url(challenge, ["repository:a/b:pull"])
    assert url.params.multi_items() == [("account", "x"), ("service", "svc"), ("scope", "repository:a/b:pull")]


@pytest.mark.asyncio
async def test_missing_challenge_returns_anonymous_response():
    upstream = _registry(challenge=None)
    async with httpx.AsyncClient(transport=upstream.transport) as client:
        resp = await AuthRelay(client).fetch_token(QUAY, ["repository:a/b:pull"])

    assert resp.status_code == 401
    assert len(upstream.requests) == 1


@pytest.mark.asyncio
async def test_issuer_rejection_is_returned_as_is():
    upstream = _registry(token_status=401)
    async with httpx.AsyncClient(transport=upstream.transport) as client:
        resp = await AuthRelay(client).fetch_token(DOCKER_HUB, ["repository:nginx:pull"], authorization="Basic bad")
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_unreachable_upstream_raises_network_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(NetworkError):
            await AuthRelay(client).fetch_token(QUAY, [])


@pytest.mark.asyncio
async def test_unreachable_issuer_raises_network_error():
    def handler(request):
        if request.url.path == "/v2/":
            return httpx.Response(401, headers={"www-authenticate": DOCKER_CHALLENGE})
        raise httpx.ReadTimeout("timed out", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(NetworkError):
            await AuthRelay(client).fetch_token(DOCKER_HUB, ["repository:nginx:pull"])
