# -*- coding: utf-8 -*-
"""
@FileName    : rewriter.py
@Author      : jiaxin
@Date        : 2026/1/22
@Time        : 10:40
@Description :
Docker Hub 官方镜像补全 library/ 命名空间（nginx → library/nginx）。
路径补全是代理内部静默替换，客户端看到的仍是原始路径。
"""
from typing import Optional

from .logger import get_logger

logger = get_logger()

LIBRARY_NAMESPACE = "library"


def rewrite_path(path: str) -> str:
    """
    /v2/<name>/<manifests|blobs|tags>/<ref> → /v2/library/<name>/...

    仅当按 "/" 切分后恰好 5 段且第 2 段为 v2 时补全；
    其余形态（_catalog、已带命名空间的镜像等）原样返回。
    """
    parts = path.split("/")
    if len(parts) != 5 or parts[1] != "v2" or not parts[2]:
        return path
    parts.insert(2, LIBRARY_NAMESPACE)
    new_path = "/".join(parts)
    logger.debug(f"📝 [路径] Docker Hub 补全 library 命名空间 → {path} => {new_path}")
    return new_path


def rewrite_scope(scope: Optional[str]) -> Optional[str]:
    """repository:<name>:pull → repository:library/<name>:pull（name 不含 / 时）"""
    if not scope:
        return scope
    parts = scope.split(":")
    if len(parts) != 3:
        # 畸形 scope 不是致命错误，交给上游自行判断
        logger.warning(f"⚠️ [认证] scope 格式异常，保持原样 → {scope}")
        return scope
    if parts[0] != "repository" or "/" in parts[1]:
        return scope
    parts[1] = f"{LIBRARY_NAMESPACE}/{parts[1]}"
    return ":".join(parts)
