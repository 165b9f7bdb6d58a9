# -*- coding: utf-8 -*-
"""
@FileName    : utils.py
@Author      : jiaxin
@Date        : 2026/1/20
@Time        : 00:22
@Description :
工具函数模块，包含：
- 入站请求快照（ProxyRequest）
- 请求头处理
- 客户端断开时取消上游调用链
"""

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Dict, Iterable, List, Optional, Tuple, TypeVar

import httpx
from fastapi import Request

from .errors import ClientDisconnected
from .logger import get_logger

logger = get_logger()

T = TypeVar("T")

# 逐跳头 + 由 httpx 自行计算的头，转发给上游前一律去掉
REQUEST_SKIP_HEADERS = frozenset({
    "host",
    "content-length",
    "content-encoding",
    "accept-encoding",
    "connection",
    "keep-alive",
    "transfer-encoding",
    "te",
    "upgrade",
    "proxy-connection",
})


@dataclass(frozen=True)
class ProxyRequest:
    """入站请求的只读快照，读取完成后不再改变"""
    method: str
    scheme: str
    hostname: str
    path: str
    query: str
    headers: Dict[str, str] = field(default_factory=dict)
    query_items: Tuple[Tuple[str, str], ...] = ()
    body: bytes = b""
    port: Optional[int] = None

    @classmethod
    async def from_request(cls, request: Request) -> "ProxyRequest":
        body = b"" if request.method in ("GET", "HEAD") else await request.body()
        return cls(
            method=request.method.upper(),
            scheme=request.url.scheme,
            hostname=(request.url.hostname or "").lower(),
            port=request.url.port,
            path=request.url.path,
            query=request.url.query,
            headers=handle_headers(request.headers.raw),
            query_items=tuple(request.query_params.multi_items()),
            body=body,
        )

    @property
    def authorization(self) -> Optional[str]:
        return self.headers.get("authorization")

    def query_values(self, name: str) -> List[str]:
        return [value for key, value in self.query_items if key == name]

    def origin(self, debug: bool = False) -> str:
        """代理自身对外的 origin；生产环境固定 https，调试模式沿用入站 scheme 和端口"""
        if not debug:
            return f"https://{self.hostname}"
        if self.port:
            return f"{self.scheme}://{self.hostname}:{self.port}"
        return f"{self.scheme}://{self.hostname}"


# ======================
# 请求头处理：合并重复头 + 去除逐跳头
# ======================
def handle_headers(raw_headers: Iterable[Tuple[bytes, bytes]]) -> Dict[str, str]:
    """
    将原始 header 列表转换为标准 dict，并：
    - 合并重复的 header（如多个 Accept）→ 用逗号连接（符合 RFC）
    - 移除 host / content-length 等逐跳头（由 httpx 重新生成）
    - 所有 header key 转为小写（HTTP 规范不区分大小写）
    """
    header_dict: Dict[str, str] = {}

    for key, value in raw_headers:
        key_str = key.decode("latin-1").lower()
        val_str = value.decode("latin-1")

        if key_str in REQUEST_SKIP_HEADERS:
            continue

        if key_str in header_dict:
            header_dict[key_str] = f"{header_dict[key_str]},{val_str}"
        else:
            header_dict[key_str] = val_str

    logger.debug(f"🔧 [Headers] 已处理请求头 → 共 {len(header_dict)} 项")
    return header_dict


def upstream_headers(headers: Dict[str, str], include_authorization: bool = True) -> Dict[str, str]:
    """构造发往上游的请求头：固定 identity 编码，保证长度与字节数一致"""
    result = {k: v for k, v in headers.items() if include_authorization or k != "authorization"}
    result["accept-encoding"] = "identity"
    return result


def same_origin(a: httpx.URL, b: httpx.URL) -> bool:
    return (a.scheme, a.host, a.port) == (b.scheme, b.host, b.port)


# ======================
# 客户端断开 → 放弃仍在进行的上游调用
# ======================
async def cancel_on_disconnect(request: Request, awaitable: Awaitable[T], poll_interval: float = 0.5) -> T:
    """
    在后台任务中执行上游调用链，同时轮询客户端连接状态。
    客户端提前断开时取消任务（httpx 连接随之关闭），抛出 ClientDisconnected。

    注意：调用前必须已经读完请求体，否则 is_disconnected() 会吞掉 body 消息。
    """
    task = asyncio.ensure_future(awaitable)
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=poll_interval)
            if done:
                return task.result()
            if await request.is_disconnected():
                logger.warning(f"🔌 [代理] 客户端已断开 → 取消上游请求 {request.method} {request.url.path}")
                task.cancel()
                raise ClientDisconnected()
    finally:
        if not task.done():
            task.cancel()
