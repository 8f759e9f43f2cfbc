"""Envelopes every relaykit response is wrapped in, successful or not."""

import uuid
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


def new_request_id() -> str:
    return uuid.uuid4().hex


class SuccessResponse(BaseModel):
    """Also what an idempotent replay returns, byte for byte, request_id included."""
    success: bool = True
    request_id: str = Field(default_factory=new_request_id)
    data: Optional[Any] = None


class ErrorDetail(BaseModel):
    # Errors may carry extra hints such as retry_after or validation details
    model_config = ConfigDict(extra="allow")

    code: str
    message: Any


class ErrorResponse(BaseModel):
    success: bool = False
    error: ErrorDetail
    request_id: str = Field(default_factory=new_request_id)
