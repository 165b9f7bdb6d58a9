# -*- coding: utf-8 -*-
"""
@FileName    : normalizer.py
@Author      : jiaxin
@Date        : 2026/1/22
@Time        : 16:00
@Description :
响应规整：所有返回给客户端的响应都从这里构造。

- 每个响应都带 Docker-Distribution-Api-Version 和 CORS 头（包括错误响应）
- 每个响应都带精确的 Content-Length，绝不出现 Transfer-Encoding
- HEAD 不带 body，但 Content-Length 与 GET 一致
- 上游 401 一律替换成代理自己的 401，realm 指回本机 /v2/auth

body 处理策略（settings.body_strategy）：
- buffer：全部读入内存再计算长度，最简单且总是正确，大 blob 会占内存并增加首字节延迟
- stream：manifest/JSON 仍然缓冲；其余 body 在上游声明了长度、非 chunked 且没有 Content-Encoding 时
  直接流式透传，长度取上游的 Content-Length；其余情况退回缓冲
"""

from typing import AsyncIterator, Awaitable, Callable, Dict, Iterable, Literal, Optional, Tuple

import httpx
from fastapi import Response
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from .logger import get_logger
from .schemas import UnauthorizedResponse
from .utils import ProxyRequest

logger = get_logger()

API_VERSION = "registry/2.0"

PROTOCOL_HEADERS = {
    "docker-distribution-api-version": API_VERSION,
    "access-control-allow-origin": "*",
    "access-control-expose-headers": "Docker-Content-Digest, Content-Length",
}

# 会破坏分帧或由代理重新计算的头
RESPONSE_SKIP_HEADERS = frozenset({
    "content-length",
    "transfer-encoding",
    "content-encoding",
    "connection",
    "keep-alive",
    "proxy-connection",
    "trailer",
    "upgrade",
})

MeasureFallback = Callable[[], Awaitable[int]]


def filter_response_headers(raw_headers: Iterable[Tuple[bytes, bytes]]) -> Dict[str, str]:
    """上游响应头 → 出站响应头：去掉分帧相关头，合并重复头"""
    header_dict: Dict[str, str] = {}
    for key, value in raw_headers:
        key_str = key.decode("latin-1").lower()
        if key_str in RESPONSE_SKIP_HEADERS:
            continue
        val_str = value.decode("latin-1")
        if key_str in header_dict:
            header_dict[key_str] = f"{header_dict[key_str]},{val_str}"
        else:
            header_dict[key_str] = val_str
    return header_dict


def declared_length(response: httpx.Response) -> Optional[int]:
    """上游声明的 Content-Length；chunked 或缺失/非法时返回 None"""
    if "transfer-encoding" in response.headers:
        return None
    value = response.headers.get("content-length")
    if value is None:
        return None
    try:
        length = int(value.split(",")[0].strip())
    except ValueError:
        return None
    return length if length >= 0 else None


def must_buffer(content_type: Optional[str]) -> bool:
    """manifest 和 JSON 的精确字节数会被客户端用来计算 digest，始终缓冲"""
    if not content_type:
        return False
    content_type = content_type.lower()
    return "json" in content_type or "manifest" in content_type


class ResponseNormalizer:

    def __init__(
            self,
            service_name: str,
            body_strategy: Literal["buffer", "stream"] = "buffer",
            debug: bool = False,
    ):
        self.service_name = service_name
        self.body_strategy = body_strategy
        self.debug = debug

    # ======================
    # 代理自己构造的响应
    # ======================
    def build(
            self,
            status_code: int,
            body: bytes = b"",
            headers: Optional[Dict[str, str]] = None,
            method: str = "GET",
            content_length: Optional[int] = None,
    ) -> Response:
        """所有非流式出站响应的唯一出口：补协议头 + 精确 Content-Length"""
        out = dict(headers or {})
        for key in RESPONSE_SKIP_HEADERS:
            out.pop(key, None)
        out.update(PROTOCOL_HEADERS)
        length = len(body) if content_length is None else content_length
        out["content-length"] = str(length)
        if method == "HEAD":
            body = b""
        return Response(content=body, status_code=status_code, headers=out)

    def json_response(
            self,
            status_code: int,
            payload: BaseModel,
            method: str = "GET",
            headers: Optional[Dict[str, str]] = None,
    ) -> Response:
        body = payload.model_dump_json(exclude_none=True).encode("utf-8")
        out = {"content-type": "application/json; charset=utf-8"}
        out.update(headers or {})
        return self.build(status_code, body, out, method=method)

    def redirect(self, location: str, status_code: int = 301, method: str = "GET") -> Response:
        return self.build(status_code, headers={"location": location}, method=method)

    def unauthorized(self, request: ProxyRequest) -> Response:
        realm = f"{request.origin(self.debug)}/v2/auth"
        www_auth = f'Bearer realm="{realm}",service="{self.service_name}"'
        logger.info(f"🛡️ [认证] 返回代理自身的 401 → realm: {realm}")
        return self.json_response(
            401,
            UnauthorizedResponse(),
            method=request.method,
            headers={"www-authenticate": www_auth},
        )

    # ======================
    # 上游响应 → 出站响应
    # ======================
    async def normalize(
            self,
            upstream_resp: httpx.Response,
            request: ProxyRequest,
            upstream_origin: Optional[str] = None,
            measure: Optional[MeasureFallback] = None,
            on_close: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> Response:
        """
        upstream_resp 必须是以 stream=True 发出的响应，所有权转交给这里：
        缓冲路径在返回前关闭它；流式路径在 body 迭代器退出时关闭（包括上游中途出错和客户端断开），
        并调用 on_close 释放 httpx 客户端。
        """
        method = request.method
        headers = filter_response_headers(upstream_resp.headers.raw)
        self._rewrite_location(headers, upstream_resp.status_code, request, upstream_origin)
        length = declared_length(upstream_resp)

        if method == "HEAD":
            if upstream_resp.is_stream_consumed and upstream_resp.request.method != "HEAD":
                # 已经以 GET 读完（认证中继），直接用实际字节数
                length = len(upstream_resp.content)
            await upstream_resp.aclose()
            if length is None and measure is not None:
                logger.info(f"📏 [规整] 上游 HEAD 未声明长度 → 发起 GET 计算 | {upstream_resp.url}")
                length = await measure()
            return self.build(upstream_resp.status_code, headers=headers, method="HEAD",
                              content_length=length or 0)

        content_type = upstream_resp.headers.get("content-type")
        if (
                self.body_strategy == "stream"
                and length is not None
                and not upstream_resp.is_stream_consumed
                and "content-encoding" not in upstream_resp.headers
                and not must_buffer(content_type)
        ):
            logger.info(f"📦 [规整] 流式透传 → Content-Length: {length} | {upstream_resp.url}")
            headers.update(PROTOCOL_HEADERS)
            headers["content-length"] = str(length)
            return StreamingResponse(
                self._stream_body(upstream_resp, on_close),
                status_code=upstream_resp.status_code,
                headers=headers,
            )

        body = await upstream_resp.aread()
        if length is not None and length != len(body):
            logger.warning(
                f"⚠️ [规整] 上游声明长度与实际不符 → 声明: {length} 实际: {len(body)} | {upstream_resp.url}"
            )
        logger.debug(f"📡 [规整] 缓冲响应 → Status: {upstream_resp.status_code} | {len(body)} bytes")
        return self.build(upstream_resp.status_code, body, headers, method=method)

    def _rewrite_location(
            self,
            headers: Dict[str, str],
            status_code: int,
            request: ProxyRequest,
            upstream_origin: Optional[str],
    ) -> None:
        """推送会话（201/202）的 Location 指向上游时改写回代理，后续 PATCH/PUT 仍经过代理"""
        location = headers.get("location")
        if not location or not upstream_origin or status_code not in (201, 202):
            return
        if location.startswith(upstream_origin):
            new_location = request.origin(self.debug) + location[len(upstream_origin):]
            logger.info(f"🔄 [规整] 重写 {status_code} Location → {location} => {new_location}")
            headers["location"] = new_location

    @staticmethod
    async def _stream_body(
            upstream_resp: httpx.Response,
            on_close: Optional[Callable[[], Awaitable[None]]],
    ) -> AsyncIterator[bytes]:
        """透传原始字节；正常结束、上游中途出错或客户端断开时都释放上游响应和客户端"""
        try:
            async for chunk in upstream_resp.aiter_raw():
                yield chunk
        finally:
            await upstream_resp.aclose()
            if on_close is not None:
                await on_close()
