# mapbackend/models/messages.py
from __future__ import annotations

from typing import Any, List, Optional

from pydantic import BaseModel, Field


# ---- Auth ----


class LoginUser(BaseModel):
    id: Any
    username: str
    role: str
    fullName: str


class LoginResponse(BaseModel):
    message: str = "Login successful"
    token: str
    user: LoginUser


# ---- App control ----


class AppStatus(BaseModel):
    isActive: bool = True
    reason: Optional[str] = None
    updatedAt: Optional[str] = None
    updatedBy: Optional[str] = None


class AppControlResponse(BaseModel):
    success: bool = True
    status: AppStatus
    message: Optional[str] = None
    timestamp: str


class AppControlUpdate(BaseModel):
    # raw JSON is validated by hand so a non-boolean 'active' maps to 400, not 422
    active: Any = None
    reason: Optional[Any] = None


# ---- Health ----


class HealthResponse(BaseModel):
    status: str = "ok"
    timestamp: str
    uptime: float = Field(description="seconds since process start")
    message: str = "Server is healthy"


# ---- Users / admin ----


class UserRecord(BaseModel):
    id: Any
    username: Optional[str] = None
    fullName: Optional[str] = None
    role: Optional[str] = None
    city: Optional[str] = None
    createdAt: Optional[str] = None
    updatedAt: Optional[str] = None


class UserListResponse(BaseModel):
    users: List[UserRecord]


class UserResponse(BaseModel):
    message: str
    user: Optional[UserRecord] = None


class AdminActionResponse(BaseModel):
    success: bool = True
    message: str
    deletedCount: Optional[int] = None
