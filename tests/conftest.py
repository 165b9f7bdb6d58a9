# -*- coding: utf-8 -*-
from typing import Callable, List

import httpx
import pytest
from fastapi.testclient import TestClient

from registry_mirror.lib.settings import Settings
from registry_mirror.main import create_app

DOCKER_HOST = "docker.example.com"
QUAY_HOST = "quay.example.com"
GHCR_HOST = "ghcr.example.com"

DOCKER_CHALLENGE = 'Bearer realm="https://auth.docker.io/token",service="registry.docker.io"'


class FakeUpstream:
    """记录所有出站请求，按 handler 返回响应"""

    def __init__(self, handler: Callable[[httpx.Request], httpx.Response]):
        self.handler = handler
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    def urls(self) -> List[str]:
        return [str(r.url) for r in self.requests]


@pytest.fixture
def settings() -> Settings:
    return Settings(custom_domain="example.com")


@pytest.fixture
def make_client(settings):
    """make_client(handler, **overrides) → (TestClient, FakeUpstream)"""
    def _make(handler, **overrides):
        upstream = FakeUpstream(handler)
        app_settings = settings.model_copy(update=overrides) if overrides else settings
        app = create_app(app_settings, transport=upstream.transport)
        return TestClient(app), upstream
    return _make
