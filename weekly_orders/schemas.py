"""
Pydantic Schemas for Request/Response Validation

Covers the weekly menu, per-user counters and comments, the weekly
summary and the admin endpoints.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


# =============================================================================
# REQUEST SCHEMAS
# =============================================================================

class MenuUpload(BaseModel):
    """Raw day -> options mapping; day labels are normalized server side."""
    menu: dict[str, list[Any]] = Field(
        ...,
        examples=[{"LUNES": ["Milanesa", "Ensalada"], "miercoles": ["Pastas"]}],
    )


class CounterChange(BaseModel):
    """Increment or decrement of one option counter."""
    user_name: str = Field(..., min_length=1, max_length=100, examples=["oriana"])
    day: str = Field(..., min_length=1, max_length=20, examples=["Lunes"])
    option: str = Field(..., min_length=1, max_length=200, examples=["Opción 1"])
    amount: int = Field(default=1, ge=1, le=50)

    @field_validator("user_name", "day", "option")
    @classmethod
    def strip_text(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Must not be blank")
        return v


class CommentCreate(BaseModel):
    """A comment for one user's day."""
    user_name: str = Field(..., min_length=1, max_length=100)
    day: str = Field(..., min_length=1, max_length=20)
    comment: str = Field(..., min_length=1, max_length=250, examples=["sin sal"])


class CommentDelete(BaseModel):
    """Removal of a comment by its position in the user's list."""
    user_name: str = Field(..., min_length=1, max_length=100)
    day: str = Field(..., min_length=1, max_length=20)
    index: int = Field(..., ge=0)


# =============================================================================
# RESPONSE SCHEMAS
# =============================================================================

class DaySummaryResponse(BaseModel):
    day: str
    counts: dict[str, int]
    comments: list[str]


class SummaryResponse(BaseModel):
    """Weekly aggregate (or a single user's view of it)."""
    week_start: str
    user: Optional[str] = None
    orders: list[DaySummaryResponse]
    total: int = 0
    updated_at: Optional[datetime] = None
    updated_by: Optional[str] = None
    state: Optional[str] = None
    degraded: bool = False


class ResetInfo(BaseModel):
    should_reset: bool
    seeded: bool = False
    skipped: bool = False
    notice: Optional[str] = None


class MenuResponse(BaseModel):
    """Menu in effect."""
    menu: dict[str, list[str]]
    week_start: str
    source: str
    menu_id: Optional[int] = None
    menu_week: Optional[str] = None
    updated_at: Optional[datetime] = None
    degraded: bool = False
    reset: Optional[ResetInfo] = None


class OrderRecordResponse(BaseModel):
    """State of one counter after a change."""
    week_start: str
    day: str
    option: str
    user_name: str
    count: int
    comments: list[str]
    updated_at: Optional[datetime] = None


class CounterResponse(BaseModel):
    success: bool = True
    record: Optional[OrderRecordResponse] = None
    message: Optional[str] = None


class CommentsResponse(BaseModel):
    success: bool = True
    day: str
    comments: list[str]


class ClearCommentsResponse(BaseModel):
    success: bool = True
    week_start: str
    cleared: int


class ShareResponse(BaseModel):
    """Shareable text of the summary."""
    week_start: str
    text: str
    whatsapp_url: str


class UsersResponse(BaseModel):
    users: list[str]


class SendSummaryResponse(BaseModel):
    success: bool
    week_start: str
    message: str
    recipients: list[str] = []
    message_id: Optional[str] = None
    summary: Optional[dict[str, Any]] = None


class DiagnosticsResponse(BaseModel):
    """Operational view used by the admin page."""
    week_start: str
    week_policy: str
    records: int
    weeks: list[dict[str, Any]]
    reconcilers: list[dict[str, Any]]
    cache: str
    feed: str
    notifications: str


class ErrorResponse(BaseModel):
    """Standard error response."""
    success: bool = False
    error: str
    detail: Optional[str] = None


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    database: str
    cache: str
    change_feed: str
    notification_service: str
    timestamp: datetime
