# -*- coding: utf-8 -*-
"""
@FileName    : errors.py
@Author      : jiaxin
@Date        : 2026/1/22
@Time        : 10:05
@Description :
代理内部异常。所有异常都在调度层被转换成完整的 HTTP 响应，不会越过请求边界。
"""
from typing import Optional


class RegistryProxyError(Exception):
    """代理异常基类，status_code 即返回给客户端的状态码"""
    status_code: int = 502
    message: str = "Bad Gateway"

    def __init__(self, detail: Optional[str] = None):
        super().__init__(detail or self.message)
        self.detail = detail


class RoutingError(RegistryProxyError):
    """Host 不在路由表中，直接 404，不重试"""
    status_code = 404
    message = "Host Not Found"

    def __init__(self, hostname: str):
        super().__init__(f"no upstream registered for host '{hostname}'")
        self.hostname = hostname


class UpstreamProtocolError(RegistryProxyError):
    """上游违反协议（缺失/畸形 WWW-Authenticate 等）。认证中继捕获后降级为透传原始响应，不会返回给客户端"""
    message = "Upstream Protocol Error"


class NetworkError(RegistryProxyError):
    """上游或 token 签发方不可达/超时"""
    message = "Upstream Unreachable"

    def __init__(self, url: str, cause: Optional[BaseException] = None):
        reason = f"{type(cause).__name__}: {cause}" if cause else "request failed"
        super().__init__(f"{url} -> {reason}")
        self.url = url


class RedirectLoopError(RegistryProxyError):
    """重定向目标再次返回 3xx，只允许跟随一跳"""
    message = "Too Many Redirects"

    def __init__(self, url: str, location: Optional[str]):
        super().__init__(f"{url} redirected again to {location}")
        self.url = url
        self.location = location


class ClientDisconnected(RegistryProxyError):
    """客户端在上游调用链完成前断开，响应不会被送达"""
    status_code = 499
    message = "Client Closed Request"
