# -*- coding: utf-8 -*-
import pytest
from pydantic import ValidationError

from registry_mirror.lib.router import RouteTable, Upstream
from registry_mirror.lib.settings import RegistryConfig, Settings

EXPECTED_ROUTES = {
    "docker.example.com": "https://registry-1.docker.io",
    "quay.example.com": "https://quay.io",
    "gcr.example.com": "https://gcr.io",
    "k8s-gcr.example.com": "https://k8s.gcr.io",
    "k8s.example.com": "https://registry.k8s.io",
    "ghcr.example.com": "https://ghcr.io",
    "cloudsmith.example.com": "https://docker.cloudsmith.io",
    "ecr.example.com": "https://public.ecr.aws",
}


@pytest.fixture
def route_table(settings):
    return RouteTable.from_settings(settings)


@pytest.mark.parametrize("hostname,origin", sorted(EXPECTED_ROUTES.items()))
def test_resolve_registered_hosts(route_table, hostname, origin):
    assert route_table.resolve_upstream(hostname).origin == origin


@pytest.mark.parametrize("hostname", [
    "example.com",
    "registry.example.com",
    "docker.example.org",
    "sub.docker.example.com",
    "docker.example.com.evil.net",
    "",
    None,
])
def test_unknown_hosts_are_not_found(route_table, hostname):
    assert route_table.resolve_upstream(hostname) is None


def test_hostname_match_is_case_insensitive(route_table):
    assert route_table.resolve_upstream("Docker.Example.COM").origin == "https://registry-1.docker.io"


def test_only_docker_hub_is_flagged(route_table):
    flagged = [h for h, upstream in route_table.items() if upstream.is_docker_hub]
    assert flagged == ["docker.example.com"]


def test_table_has_default_registries(route_table):
    assert len(route_table) == len(EXPECTED_ROUTES)
    assert "quay.example.com" in route_table
    assert "nope.example.com" not in route_table


def test_config_adds_and_overrides_registries():
    settings = Settings(
        custom_domain="Mirror.Example.NET.",
        registries={
            "harbor": "https://harbor.internal:8443/",
            "ghcr": {"origin": "https://ghcr.io", "redirect_auth": "never"},
        },
    )
    table = RouteTable.from_settings(settings)

    harbor = table.resolve_upstream("harbor.mirror.example.net")
    assert harbor == Upstream(origin="https://harbor.internal:8443", redirect_auth="same-origin")
    assert table.resolve_upstream("ghcr.mirror.example.net").redirect_auth == "never"
    # 默认项仍然保留
    assert table.resolve_upstream("quay.mirror.example.net").origin == "https://quay.io"


@pytest.mark.parametrize("origin", ["registry.example.com", "https://host/with/path", "ftp://host"])
def test_registry_origin_must_be_bare_origin(origin):
    with pytest.raises(ValidationError):
        RegistryConfig(origin=origin)


def test_route_table_rejects_origin_with_path():
    with pytest.raises(ValueError):
        RouteTable({"a.example.com": Upstream(origin="https://host/v2")})
