from __future__ import annotations

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class UserRole(str, Enum):
    CHILD = "child"
    PARENT = "parent"
    THERAPIST = "therapist"
    ADMIN = "admin"


class User(BaseModel):
    # Opaque identifier issued by the upstream identity provider.
    id: str
    role: UserRole
    name: str
    disability_type: Optional[str] = None
    additional_info: Optional[str] = None
    # Child ids linked to a parent account. Empty for every other role.
    children: List[str] = Field(default_factory=list)


class ChildSummary(BaseModel):
    """Display-oriented view of a child shown to therapists."""

    id: str
    name: Optional[str] = None
    disability_type: Optional[str] = None
    additional_info: Optional[str] = None
