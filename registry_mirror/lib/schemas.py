# -*- coding: utf-8 -*-
"""
@FileName    : schemas.py
@Author      : jiaxin
@Date        : 2026/1/10
@Time        : 17:29
@Description :
"""
from pydantic import BaseModel
from typing import Optional


class HealthCheckResponse(BaseModel):
    status: str
    message: str
    version: Optional[str] = None


class HostNotFoundResponse(BaseModel):
    message: str = "Host Not Found"
    hostname: str


class UnauthorizedResponse(BaseModel):
    message: str = "UNAUTHORIZED"


class ErrorResponse(BaseModel):
    message: str
    detail: Optional[str] = None
