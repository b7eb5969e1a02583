"""Pydantic schemas for cached user profiles."""
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class UserRole(str, Enum):
    ADMIN = "admin"
    TEACHER = "teacher"
    PARENT = "parent"
    STUDENT = "student"


class UserProfileIn(BaseModel):
    display_name: str = Field(..., min_length=1, max_length=200)
    avatar_url: Optional[str] = None
    role: UserRole = UserRole.STUDENT


class UserProfile(UserProfileIn):
    id: str
    updated_at: datetime
