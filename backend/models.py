import uuid
from datetime import UTC, datetime
from enum import Enum

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel


def new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(UTC)


class UserRole(str, Enum):
    ADMIN = "ADMIN"
    PROJECT_LEADER = "PROJECT_LEADER"
    USER = "USER"
    READ = "READ"


class User(SQLModel, table=True):
    id: str = Field(primary_key=True)  # Identity provider uid
    email: str | None = Field(default=None, index=True)
    display_name: str | None = Field(default=None)
    role: UserRole = Field(default=UserRole.USER, index=True)
    created_at: datetime = Field(default_factory=utcnow)
    last_login: datetime | None = Field(default=None)


class Project(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    name: str
    description: str = Field(default="")
    created_by: str = Field(index=True)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class TimeEntry(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    user_id: str = Field(index=True)
    project_id: str = Field(index=True)
    task: str = Field(default="")
    notes: str = Field(default="")
    tags: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    start_time: datetime = Field(index=True)
    end_time: datetime | None = Field(default=None)  # None while running
    duration: int = Field(default=0)  # Seconds
    is_running: bool = Field(default=False, index=True)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class ActiveTimer(SQLModel, table=True):
    """Per-user pointer to the running entry; written only by compare-and-swap."""

    user_id: str = Field(primary_key=True)
    entry_id: str
    updated_at: datetime = Field(default_factory=utcnow)


class SiteSettings(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    work_hours_per_day: str = Field(default="07:24")  # HH:mm
    work_hours_per_week: str = Field(default="37:00")  # HH:mm
    updated_at: datetime = Field(default_factory=utcnow)
