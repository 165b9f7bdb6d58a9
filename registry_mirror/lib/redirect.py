# -*- coding: utf-8 -*-
"""
@FileName    : redirect.py
@Author      : jiaxin
@Date        : 2026/1/22
@Time        : 14:30
@Description :
手动处理上游 3xx（blob 下载常被重定向到对象存储）。
httpx 不自动跟随，这样才能按上游策略决定是否把 Authorization 带到重定向目标。
"""

from typing import Dict, Optional

import httpx

from .errors import NetworkError, RedirectLoopError
from .logger import get_logger
from .router import Upstream
from .utils import same_origin, upstream_headers

logger = get_logger()

REDIRECT_STATUSES = frozenset({301, 302, 303, 307, 308})


async def send_upstream(
        client: httpx.AsyncClient,
        method: str,
        url: httpx.URL,
        headers: Dict[str, str],
        body: Optional[bytes] = None,
) -> httpx.Response:
    """发出一次上游请求，响应以流的方式返回，由调用方负责读取/关闭"""
    request = client.build_request(method, url, headers=headers, content=body or None)
    try:
        return await client.send(request, stream=True, follow_redirects=False)
    except httpx.HTTPError as e:
        logger.error(f"🔥 [代理] 请求上游失败 → {method} {url} | {e!r}")
        raise NetworkError(str(url), e) from e


class RedirectResolver:
    """只跟随一跳；目标再次 3xx 视为协议异常"""

    def __init__(self, client: httpx.AsyncClient, upstream: Upstream):
        self.client = client
        self.upstream = upstream

    def forward_authorization(self, source: httpx.URL, target: httpx.URL) -> bool:
        policy = self.upstream.redirect_auth
        if policy == "always":
            return True
        if policy == "never":
            return False
        return same_origin(source, target)

    async def resolve(
            self,
            response: httpx.Response,
            method: str,
            headers: Dict[str, str],
            body: Optional[bytes] = None,
    ) -> httpx.Response:
        if response.status_code not in REDIRECT_STATUSES:
            return response

        location = response.headers.get("location")
        if not location:
            logger.error("🔗 [重定向] 3xx 响应缺少 Location 头 → 返回原响应")
            return response

        source = response.url
        target = source.join(location)
        await response.aclose()

        if response.status_code == 303 and method != "HEAD":
            method, body = "GET", None

        with_auth = self.forward_authorization(source, target)
        logger.info(
            f"🔗 [重定向] {response.status_code} {source} → {target} | "
            f"方法: {method} | 转发 Authorization: {with_auth}"
        )

        redirected = await send_upstream(
            self.client,
            method,
            target,
            upstream_headers(headers, include_authorization=with_auth),
            body,
        )
        if redirected.status_code in REDIRECT_STATUSES:
            next_location = redirected.headers.get("location")
            await redirected.aclose()
            logger.error(f"🔁 [重定向] 重定向目标再次返回 {redirected.status_code} → {next_location}")
            raise RedirectLoopError(str(target), next_location)
        return redirected
