# -*- coding: utf-8 -*-
"""
@FileName    : main.py
@Author      : jiaxin
@Date        : 2026/1/10
@Time        : 17:31
@Description :
多上游容器镜像仓库反向代理：
- 每个子域名映射一个上游注册表（docker.<domain> → Docker Hub，quay.<domain> → Quay ...）
- /v2/auth 作为统一的 token 入口，中继到各上游真实的签发方
- Docker Hub 官方镜像自动补全 library/ 命名空间
- 手动处理 blob 的 3xx 重定向，按上游策略决定是否转发 Authorization
- 所有响应带精确 Content-Length，HEAD 与 GET 长度一致
- 提供健康检查接口
"""

from typing import Optional

import httpx
from fastapi import FastAPI, Request, Response
from fastapi.responses import StreamingResponse
from starlette.requests import ClientDisconnect

from registry_mirror import __version__
from registry_mirror.lib.auth import AuthRelay
from registry_mirror.lib.errors import ClientDisconnected, RegistryProxyError, RoutingError
from registry_mirror.lib.logger import get_logger, setup_logging
from registry_mirror.lib.normalizer import ResponseNormalizer
from registry_mirror.lib.redirect import RedirectResolver, send_upstream
from registry_mirror.lib.rewriter import rewrite_path
from registry_mirror.lib.router import RouteTable, Upstream
from registry_mirror.lib.schemas import ErrorResponse, HealthCheckResponse, HostNotFoundResponse
from registry_mirror.lib.settings import Settings, get_settings
from registry_mirror.lib.utils import ProxyRequest, cancel_on_disconnect, upstream_headers

logger = get_logger()

PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE"]


class RegistryProxy:
    """请求调度：首页重定向 / 认证中继 / 转发并规整"""

    def __init__(
            self,
            settings: Settings,
            route_table: RouteTable,
            transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings
        self.route_table = route_table
        self.transport = transport
        self.normalizer = ResponseNormalizer(
            service_name=settings.service_name,
            body_strategy=settings.body_strategy,
            debug=settings.is_debug,
        )

    def build_client(self) -> httpx.AsyncClient:
        timeout = httpx.Timeout(self.settings.timeouts.read, connect=self.settings.timeouts.connect)
        return httpx.AsyncClient(
            transport=self.transport,
            timeout=timeout,
            follow_redirects=False,
            headers={"accept-encoding": "identity"},
        )

    async def dispatch(self, request: Request) -> Response:
        hostname = request.url.hostname
        upstream = self.route_table.resolve_upstream(hostname)
        if upstream is None:
            logger.warning(f"🌐 [代理] 收到未知域名请求 → Host: {hostname}")
            raise RoutingError(hostname or "")

        if request.url.path == "/":
            location = str(request.url.replace(path="/v2/", query=""))
            return self.normalizer.redirect(location, method=request.method)

        try:
            proxy_request = await ProxyRequest.from_request(request)
            if proxy_request.path == "/v2/auth":
                chain = self.handle_auth(proxy_request, upstream)
            else:
                chain = self.forward(proxy_request, upstream)
            return await cancel_on_disconnect(request, chain)
        except ClientDisconnect as e:
            logger.warning(f"🔌 [代理] 读取请求体时客户端已断开 → {request.method} {request.url.path}")
            raise ClientDisconnected() from e
        except RegistryProxyError:
            raise
        except Exception as e:
            logger.exception(f"🔥 [代理] 未预期的错误 → {request.method} {request.url.path}")
            raise RegistryProxyError(f"{type(e).__name__}: {e}") from e

    # ======================
    # 认证中继：/v2/auth
    # ======================
    async def handle_auth(self, proxy_request: ProxyRequest, upstream: Upstream) -> Response:
        async with self.build_client() as client:
            relay = AuthRelay(client)
            resp = await relay.fetch_token(
                upstream,
                scopes=proxy_request.query_values("scope"),
                authorization=proxy_request.authorization,
            )
            # token 签发方的 401（凭据错误）原样交给客户端，不再替换成代理的 401
            return await self.normalizer.normalize(resp, proxy_request)

    # ======================
    # 主代理：/v2/...
    # ======================
    async def forward(self, proxy_request: ProxyRequest, upstream: Upstream) -> Response:
        path = proxy_request.path
        if upstream.is_docker_hub:
            path = rewrite_path(path)
        target_url = upstream.origin + path
        if proxy_request.query:
            target_url = target_url + "?" + proxy_request.query
        url = httpx.URL(target_url)
        method = proxy_request.method
        body = proxy_request.body or None

        logger.info(f"➡️ [代理] {method} {proxy_request.hostname}{proxy_request.path} → {url}")

        client = self.build_client()
        streaming = False
        try:
            resolver = RedirectResolver(client, upstream)
            resp = await send_upstream(client, method, url, upstream_headers(proxy_request.headers), body)
            resp = await resolver.resolve(resp, method, proxy_request.headers, body)

            if resp.status_code == 401:
                logger.info(f"🛡️ [代理] 上游返回 401 → 替换为代理自身的认证挑战 | {resp.url}")
                await resp.aclose()
                return self.normalizer.unauthorized(proxy_request)

            async def measure() -> int:
                # 上游 HEAD 没给长度时，用一次 GET 算出 GET 会返回的字节数
                get_resp = await send_upstream(client, "GET", url, upstream_headers(proxy_request.headers))
                get_resp = await resolver.resolve(get_resp, "GET", proxy_request.headers)
                return len(await get_resp.aread())

            out = await self.normalizer.normalize(
                resp,
                proxy_request,
                upstream_origin=upstream.origin,
                measure=measure,
                on_close=client.aclose,
            )
            streaming = isinstance(out, StreamingResponse)
            logger.debug(f"📡 [代理] 上游响应 → Status: {resp.status_code} | 流式: {streaming}")
            return out
        finally:
            if not streaming:
                await client.aclose()


def create_app(
        settings: Optional[Settings] = None,
        route_table: Optional[RouteTable] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(settings)
    route_table = route_table or RouteTable.from_settings(settings)
    proxy = RegistryProxy(settings, route_table, transport=transport)
    docs_enabled = settings.docs.enabled or settings.is_debug

    app = FastAPI(
        title="Registry Mirror",
        description="多上游容器镜像仓库反向代理，支持认证中继、重定向处理与精确 Content-Length",
        version=__version__,
        docs_url="/docs" if docs_enabled else None,
        redoc_url="/redoc" if docs_enabled else None,
        openapi_url="/openapi.json" if docs_enabled else None,
    )
    app.state.proxy = proxy
    app.state.settings = settings

    @app.exception_handler(RegistryProxyError)
    async def registry_proxy_error_handler(request: Request, exc: RegistryProxyError):
        if isinstance(exc, RoutingError):
            return proxy.normalizer.json_response(
                exc.status_code, HostNotFoundResponse(hostname=exc.hostname), method=request.method
            )
        if isinstance(exc, ClientDisconnected):
            return proxy.normalizer.build(exc.status_code)
        logger.error(f"❌ [代理] {type(exc).__name__} → {exc}")
        return proxy.normalizer.json_response(
            exc.status_code,
            ErrorResponse(message=exc.message, detail=exc.detail),
            method=request.method,
        )

    # ======================
    # 健康检查端点
    # ======================
    @app.get("/healthz", response_model=HealthCheckResponse, summary="健康检查")
    async def health_check():
        """返回服务运行状态，用于 K8s/存活检查"""
        logger.debug("🩺 [健康检查] 收到探测请求")
        return proxy.normalizer.json_response(
            200,
            HealthCheckResponse(status="ok", message="registry-mirror is running", version=__version__),
        )

    # ======================
    # 主代理路由：所有路径
    # ======================
    @app.api_route("/{path:path}", methods=PROXY_METHODS, summary="主代理入口")
    async def proxy_entry(request: Request):
        return await proxy.dispatch(request)

    return app


app = create_app()


# ======================
# 应用启动入口
# ======================
def main():
    import uvicorn

    settings = get_settings()

    logger.info("📚 已加载的上游注册表映射：")
    for hostname, upstream in app.state.proxy.route_table.items():
        logger.info(f"  🌍 {hostname} → {upstream.origin} (redirect_auth={upstream.redirect_auth})")

    ssl_args = {}
    if settings.https.enabled:
        ssl_args = {
            "ssl_certfile": settings.https.cert,
            "ssl_keyfile": settings.https.key
        }
        logger.info(f"🔒 启动 HTTPS 代理服务 → https://{settings.listen.host}:{settings.listen.port}")
    else:
        logger.info(f"🔌 启动 HTTP 代理服务 → http://{settings.listen.host}:{settings.listen.port}")

    uvicorn.run(
        app,
        host=settings.listen.host,
        port=settings.listen.port,
        reload=False,
        **ssl_args
    )


if __name__ == "__main__":
    main()
