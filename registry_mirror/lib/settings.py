# -*- coding: utf-8 -*-
"""
@FileName    : settings.py
@Author      : jiaxin
@Date        : 2026/1/10
@Time        : 17:30
@Description :
配置加载：环境变量 > .env > config.yaml > 默认值
"""
import os
from pathlib import Path
from typing import Any, Dict, Literal, Optional
from pydantic import BaseModel, model_validator, field_validator, Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic_settings.sources import PydanticBaseSettingsSource
from functools import lru_cache
import yaml

DOCKER_HUB = "https://registry-1.docker.io"

RedirectAuthPolicy = Literal["same-origin", "always", "never"]


class ListenConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8000


class DocsConfig(BaseModel):
    enabled: bool = False


class HTTPSConfig(BaseModel):
    enabled: bool = False
    cert: Optional[str] = None
    key: Optional[str] = None

    @model_validator(mode='after')
    def validate_cert_and_key_if_enabled(self):
        if self.enabled:
            if not self.cert or not self.key:
                raise ValueError("'https.cert' and 'https.key' are required when 'https.enabled' is true")
            cert_path = Path(self.cert)
            key_path = Path(self.key)
            if not cert_path.exists():
                raise ValueError(f"Certificate file not found: {self.cert}")
            if not key_path.exists():
                raise ValueError(f"Private key file not found: {self.key}")
        return self


class TimeoutConfig(BaseModel):
    """出站请求超时（秒），任何上游调用都不允许无限挂起"""
    connect: float = 10.0
    read: float = 60.0


class RegistryConfig(BaseModel):
    """单个上游注册表：origin 必须是 scheme://host，不带路径"""
    origin: str
    redirect_auth: RedirectAuthPolicy = "same-origin"

    @field_validator("origin")
    @classmethod
    def validate_origin(cls, value: str) -> str:
        value = value.rstrip("/")
        scheme, sep, rest = value.partition("://")
        if not sep or scheme not in ("http", "https") or not rest or "/" in rest:
            raise ValueError(f"Registry origin must look like 'https://host', got: {value}")
        return value


def default_registries() -> Dict[str, RegistryConfig]:
    return {
        "docker": RegistryConfig(origin=DOCKER_HUB),
        "quay": RegistryConfig(origin="https://quay.io"),
        "gcr": RegistryConfig(origin="https://gcr.io"),
        "k8s-gcr": RegistryConfig(origin="https://k8s.gcr.io"),
        "k8s": RegistryConfig(origin="https://registry.k8s.io"),
        "ghcr": RegistryConfig(origin="https://ghcr.io"),
        "cloudsmith": RegistryConfig(origin="https://docker.cloudsmith.io"),
        "ecr": RegistryConfig(origin="https://public.ecr.aws"),
    }


class Settings(BaseSettings):
    custom_domain: str = "localhost"
    mode: Literal["production", "debug"] = "production"
    service_name: str = "registry-mirror"
    body_strategy: Literal["buffer", "stream"] = "buffer"
    registries: Dict[str, RegistryConfig] = Field(default_factory=default_registries)
    timeouts: TimeoutConfig = Field(default_factory=TimeoutConfig)
    listen: ListenConfig = Field(default_factory=ListenConfig)
    docs: DocsConfig = Field(default_factory=DocsConfig)
    https: HTTPSConfig = Field(default_factory=HTTPSConfig)
    log_level: str = "INFO"

    @field_validator("custom_domain")
    @classmethod
    def normalize_domain(cls, value: str) -> str:
        return value.strip().strip(".").lower()

    @field_validator("registries", mode="before")
    @classmethod
    def merge_default_registries(cls, value: Any) -> Any:
        # config.yaml 里只需写新增/覆盖的项，默认的 8 个上游始终保留
        if isinstance(value, dict):
            merged: Dict[str, Any] = dict(default_registries())
            for prefix, item in value.items():
                merged[prefix] = {"origin": item} if isinstance(item, str) else item
            return merged
        return value

    @property
    def is_debug(self) -> bool:
        return self.mode == "debug"

    @classmethod
    def settings_customise_sources(
            cls,
            settings_cls,
            init_settings,
            env_settings,
            dotenv_settings,
            file_secret_settings,
    ):
        class YamlSettingsSource(PydanticBaseSettingsSource):
            def get_field_value(self, field_name: str, field: Any) -> tuple[Any, str, bool]:
                return None, "", False

            def __call__(self) -> Dict[str, Any]:
                config_file = os.environ.get("REGISTRY_MIRROR_CONFIG", "config.yaml")
                if Path(config_file).exists():
                    with open(config_file, "r", encoding="utf-8") as f:
                        return yaml.safe_load(f) or {}
                return {}

        return (
            init_settings,
            env_settings,
            dotenv_settings,
            file_secret_settings,
            YamlSettingsSource(settings_cls),
        )

    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_nested_delimiter="__",
        extra="forbid",  # 禁止未定义字段
    )


@lru_cache()
def get_settings() -> Settings:
    return Settings()
