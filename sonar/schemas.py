"""Pydantic schemas for input validation and serialization."""

from pydantic import BaseModel, ConfigDict, Field, field_validator
from datetime import datetime
from .config import settings


# ==================== Error Schemas ====================

class ErrorResponse(BaseModel):
    """Standardized error payload with code and message."""
    error: str
    message: str
    details: dict | None = None


class ErrorCode:
    """Centralized error codes."""
    USER_NOT_FOUND = "USER_NOT_FOUND"
    PING_NOT_FOUND = "PING_NOT_FOUND"
    TOKEN_NOT_FOUND = "TOKEN_NOT_FOUND"
    DUPLICATE_USERNAME = "DUPLICATE_USERNAME"
    PASSWORD_TOO_SHORT = "PASSWORD_TOO_SHORT"
    PASSWORD_TOO_LONG = "PASSWORD_TOO_LONG"
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    COUNTER_UNDERFLOW = "COUNTER_UNDERFLOW"
    FORBIDDEN = "FORBIDDEN"
    BATCH_SIZE_EXCEEDED = "BATCH_SIZE_EXCEEDED"
    INVALID_INPUT = "INVALID_INPUT"


# ==================== User Schemas ====================

class UserOut(BaseModel):
    """User output schema without password."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    username: str
    real_name: str
    blurb: str


class UserCreate(BaseModel):
    """Schema for signing up a new user.

    Password bounds are checked by the service layer so that a bad
    password gets the same error whether it came through here or not.
    The service counts the maximum in UTF-8 bytes; this field only caps
    characters.
    """
    username: str = Field(..., min_length=1, max_length=settings.USERNAME_MAX_LENGTH)
    password: str = Field(..., max_length=settings.PASSWORD_MAX_LENGTH)
    real_name: str = Field("", max_length=settings.REAL_NAME_MAX_LENGTH)
    blurb: str = Field("", max_length=settings.BLURB_MAX_LENGTH)

    @field_validator('username')
    @classmethod
    def validate_username(cls, v: str) -> str:
        """Strip the username and reject blanks or embedded whitespace."""
        v = v.strip()
        if not v:
            raise ValueError("Username cannot be empty or only whitespace")
        if any(ch.isspace() for ch in v):
            raise ValueError("Username cannot contain whitespace")
        return v

    @field_validator('real_name', 'blurb', mode='before')
    @classmethod
    def none_to_empty(cls, v):
        """Missing profile text is stored as an empty string."""
        return "" if v is None else v


class UserUpdate(BaseModel):
    """Schema for editing a profile. Omitted fields stay unchanged."""
    real_name: str | None = Field(None, max_length=settings.REAL_NAME_MAX_LENGTH)
    blurb: str | None = Field(None, max_length=settings.BLURB_MAX_LENGTH)


# ==================== Ping Schemas ====================

class PingCreate(BaseModel):
    """Schema for a new ping."""
    content: str

    @field_validator('content')
    @classmethod
    def validate_content(cls, v: str) -> str:
        """Strip the content and enforce 1..PING_MAX_LENGTH characters."""
        v = v.strip()
        if not v:
            raise ValueError("Ping content cannot be empty")
        if len(v) > settings.PING_MAX_LENGTH:
            raise ValueError(f"Ping content cannot exceed {settings.PING_MAX_LENGTH} characters")
        return v


class PingOut(BaseModel):
    """Ping output schema."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    timestamp: datetime
    content: str
    likes: int
    echoes: int


# ==================== Token Schemas ====================

class TokenOut(BaseModel):
    """An issued auth token."""
    model_config = ConfigDict(from_attributes=True)

    user_id: int
    key: str
    timestamp: datetime


# ==================== Pagination Schemas ====================

class PaginatedUsers(BaseModel):
    """Paginated response with user items and metadata."""
    items: list[UserOut]
    total: int
    page: int
    limit: int
    pages: int


class PaginatedPings(BaseModel):
    """Paginated response with ping items and metadata."""
    items: list[PingOut]
    total: int
    page: int
    limit: int
    pages: int


# ==================== Batch Operation Schemas ====================

class BatchCreateRequest(BaseModel):
    """Request schema for batch user creation."""
    items: list[UserCreate]


class BatchCreateResponse(BaseModel):
    """Response schema for batch user creation."""
    items: list[UserOut]
    created: int


class BatchDeleteRequest(BaseModel):
    """Request schema for batch user deletion."""
    ids: list[int]


class BatchDeleteResponse(BaseModel):
    """Response schema for batch user deletion."""
    items: list[UserOut]
    deleted: int
