# -*- coding: utf-8 -*-
"""
@FileName    : auth.py
@Author      : jiaxin
@Date        : 2026/1/22
@Time        : 11:10
@Description :
认证中继：
1. 匿名 GET <upstream>/v2/ 拿到 401 和 WWW-Authenticate
2. 解析 Bearer realm/service
3. 带上客户端 scope（Docker Hub 补 library/）和 Authorization 去 realm 换 token
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import httpx

from .errors import NetworkError, UpstreamProtocolError
from .logger import get_logger
from .rewriter import rewrite_scope
from .router import Upstream

logger = get_logger()


@dataclass(frozen=True)
class AuthChallenge:
    scheme: str
    realm: str
    service: str
    params: Dict[str, str] = field(default_factory=dict)


def _parse_auth_params(text: str) -> List[Tuple[str, str]]:
    """解析 key="value", key=token 形式的参数列表，支持引号内的反斜杠转义"""
    pairs: List[Tuple[str, str]] = []
    i, n = 0, len(text)
    while i < n:
        while i < n and text[i] in " \t,":
            i += 1
        start = i
        while i < n and text[i] not in "= \t,":
            i += 1
        key = text[start:i].strip().lower()
        while i < n and text[i] in " \t":
            i += 1
        if i >= n or text[i] != "=":
            # 没有 = 的孤立 token（如 token68），跳过
            while i < n and text[i] != ",":
                i += 1
            continue
        i += 1
        while i < n and text[i] in " \t":
            i += 1
        if i < n and text[i] == '"':
            i += 1
            chars = []
            while i < n and text[i] != '"':
                if text[i] == "\\" and i + 1 < n:
                    i += 1
                chars.append(text[i])
                i += 1
            i += 1  # 跳过结尾引号
            value = "".join(chars)
        else:
            start = i
            while i < n and text[i] != ",":
                i += 1
            value = text[start:i].strip()
        if key:
            pairs.append((key, value))
    return pairs


def parse_www_authenticate(header: Optional[str]) -> AuthChallenge:
    """
    Bearer realm="https://auth.docker.io/token",service="registry.docker.io"
    → AuthChallenge(realm=..., service=...)

    缺少 realm/service 或不是 Bearer 时抛出 UpstreamProtocolError，由认证中继降级处理。
    """
    if not header:
        raise UpstreamProtocolError("missing WWW-Authenticate header")
    scheme, _, rest = header.strip().partition(" ")
    if scheme.lower() != "bearer":
        raise UpstreamProtocolError(f"unsupported auth scheme: {scheme}")
    params: Dict[str, str] = {}
    for key, value in _parse_auth_params(rest):
        params.setdefault(key, value)
    realm = params.get("realm")
    service = params.get("service")
    if not realm or not service:
        raise UpstreamProtocolError(f"challenge lacks realm/service: {header}")
    return AuthChallenge(scheme="Bearer", realm=realm, service=service, params=params)


class AuthRelay:
    """把客户端凭据桥接到上游的 token 签发方"""

    def __init__(self, client: httpx.AsyncClient):
        self.client = client

    async def fetch_challenge(self, upstream: Upstream) -> httpx.Response:
        challenge_url = f"{upstream.origin}/v2/"
        logger.info(f"🔍 [认证] 匿名探测上游 → {challenge_url}")
        try:
            return await self.client.get(challenge_url, follow_redirects=True)
        except httpx.HTTPError as e:
            logger.error(f"🚨 [认证] 探测上游失败 → {challenge_url} | {e!r}")
            raise NetworkError(challenge_url, e) from e

    def build_token_url(self, challenge: AuthChallenge, scopes: List[str]) -> httpx.URL:
        url = httpx.URL(challenge.realm)
        params = list(url.params.multi_items())
        if challenge.service:
            params = [(k, v) for k, v in params if k != "service"] + [("service", challenge.service)]
        if scopes:
            params = [(k, v) for k, v in params if k != "scope"] + [("scope", s) for s in scopes]
        return url.copy_with(params=params)

    async def fetch_token(
            self,
            upstream: Upstream,
            scopes: List[str],
            authorization: Optional[str] = None,
    ) -> httpx.Response:
        """
        返回 token 签发方的响应（已读完 body）；
        探测结果不含可用的 Bearer challenge 时，原样返回匿名请求的响应。
        """
        anonymous_resp = await self.fetch_challenge(upstream)
        www_auth = anonymous_resp.headers.get("www-authenticate")
        try:
            challenge = parse_www_authenticate(www_auth)
        except UpstreamProtocolError as e:
            logger.warning(
                f"⚠️ [认证] 上游未返回可解析的 Bearer challenge → 透传匿名请求的响应 | "
                f"Status: {anonymous_resp.status_code} | {e}"
            )
            return anonymous_resp

        if upstream.is_docker_hub:
            scopes = [rewrite_scope(scope) for scope in scopes]

        token_url = self.build_token_url(challenge, scopes)
        headers = {}
        if authorization:
            headers["authorization"] = authorization

        logger.info(
            f"🔐 [认证] 请求 token → {challenge.realm} | "
            f"service={challenge.service} scope={scopes} 携带凭据={bool(authorization)}"
        )
        try:
            resp = await self.client.get(token_url, headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"🚨 [认证] token 签发方不可达 → {challenge.realm} | {e!r}")
            raise NetworkError(challenge.realm, e) from e

        logger.info(f"✅ [认证] token 签发方返回状态码: {resp.status_code}")
        return resp
