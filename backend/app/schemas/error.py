"""Standard error response schema."""
from __future__ import annotations

from typing import Optional

from pydantic import BaseModel


class ErrorResponse(BaseModel):
    error: str
    detail: str
    current_status: Optional[str] = None
    violations: Optional[list[str]] = None
