"""
Common Schemas
==============

Error envelope shared by every endpoint (documented in OpenAPI).
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict


class ErrorDetail(BaseModel):
    """Error detail structure."""

    model_config = ConfigDict(extra="allow")

    code: str
    message: str
    field: Optional[str] = None
    # Set on 5xx webhook responses the provider should retry
    retryable: Optional[bool] = None


class ErrorResponse(BaseModel):
    """Standard error response."""

    success: bool = False
    error: ErrorDetail
