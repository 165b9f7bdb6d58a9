# -*- coding: utf-8 -*-
"""
@FileName    : router.py
@Author      : jiaxin
@Date        : 2026/1/22
@Time        : 10:20
@Description :
虚拟域名 → 上游注册表 的路由表。启动时构建一次，之后只读。
"""
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, Iterator, Mapping, Optional, Tuple

from .settings import DOCKER_HUB, RedirectAuthPolicy, Settings


@dataclass(frozen=True)
class Upstream:
    origin: str
    redirect_auth: RedirectAuthPolicy = "same-origin"

    @property
    def is_docker_hub(self) -> bool:
        return self.origin == DOCKER_HUB


class RouteTable:
    """精确匹配 hostname，不做通配/前缀匹配"""

    def __init__(self, routes: Mapping[str, Upstream]):
        table: Dict[str, Upstream] = {}
        for hostname, upstream in routes.items():
            if "://" not in upstream.origin or "/" in upstream.origin.split("://", 1)[1]:
                raise ValueError(f"Upstream origin must be 'scheme://host': {upstream.origin}")
            table[hostname.lower()] = upstream
        self._routes = MappingProxyType(table)

    @classmethod
    def from_settings(cls, settings: Settings) -> "RouteTable":
        routes = {
            f"{prefix}.{settings.custom_domain}": Upstream(
                origin=registry.origin,
                redirect_auth=registry.redirect_auth,
            )
            for prefix, registry in settings.registries.items()
        }
        return cls(routes)

    def resolve_upstream(self, hostname: Optional[str]) -> Optional[Upstream]:
        if not hostname:
            return None
        return self._routes.get(hostname.lower())

    def items(self) -> Iterator[Tuple[str, Upstream]]:
        return iter(self._routes.items())

    def __contains__(self, hostname: object) -> bool:
        return isinstance(hostname, str) and hostname.lower() in self._routes

    def __len__(self) -> int:
        return len(self._routes)
