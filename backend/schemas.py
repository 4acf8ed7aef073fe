import re
from datetime import UTC, date, datetime

from pydantic import BaseModel, field_validator, model_validator
from sqlmodel import SQLModel

from models import UserRole
from timecalc import as_utc

DAILY_HOURS_RE = re.compile(r"^([0-1]?[0-9]|2[0-3]):[0-5][0-9]$")
WEEKLY_HOURS_RE = re.compile(r"^([0-9]{1,3}):[0-5][0-9]$")


class ProjectCreate(BaseModel):
    name: str
    description: str = ""

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        if not v.strip():
            raise ValueError("Project name is required")
        return v.strip()


class ProjectUpdate(BaseModel):
    name: str | None = None
    description: str | None = None


class ProjectResponse(SQLModel):
    id: str
    name: str
    description: str
    created_by: str
    created_at: datetime
    updated_at: datetime


class TimeEntryCreate(BaseModel):
    project_id: str
    start_time: datetime
    end_time: datetime | None = None
    duration: int | None = None
    task: str = ""
    notes: str = ""
    tags: list[str] = []

    @field_validator("start_time", "end_time")
    @classmethod
    def to_utc(cls, v):
        return as_utc(v).astimezone(UTC) if v is not None else v

    @model_validator(mode="after")
    def validate_times(self):
        if self.end_time is None and self.duration is None:
            raise ValueError("Either end_time or duration is required")
        if self.end_time is not None and self.end_time < self.start_time:
            raise ValueError("end_time must not be before start_time")
        if self.duration is not None and self.duration < 0:
            raise ValueError("duration must not be negative")
        return self


class TimeEntryUpdate(BaseModel):
    project_id: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    duration: int | None = None
    task: str | None = None
    notes: str | None = None
    tags: list[str] | None = None

    @field_validator("start_time", "end_time")
    @classmethod
    def to_utc(cls, v):
        return as_utc(v).astimezone(UTC) if v is not None else v

    @model_validator(mode="after")
    def validate_times(self):
        if self.start_time is not None and self.end_time is not None and self.end_time < self.start_time:
            raise ValueError("end_time must not be before start_time")
        if self.duration is not None and self.duration < 0:
            raise ValueError("duration must not be negative")
        return self


class TimeEntryResponse(SQLModel):
    id: str
    user_id: str
    project_id: str
    task: str
    notes: str
    tags: list[str]
    start_time: datetime
    end_time: datetime | None = None
    duration: int
    is_running: bool


class TimerStart(BaseModel):
    project_id: str
    task: str = ""
    tags: list[str] = []


class ProjectStats(BaseModel):
    total_duration: int
    number_of_entries: int


class StatsResponse(BaseModel):
    total_duration: int
    number_of_entries: int
    average_duration: float
    project_stats: dict[str, ProjectStats]


class IntervalResponse(BaseModel):
    id: str
    project_id: str
    task: str
    day_key: str
    start_time: datetime
    end_time: datetime | None = None
    duration_seconds: int
    is_running: bool


class GroupResponse(BaseModel):
    project_id: str
    task: str
    total_duration_seconds: int
    entry_count: int
    is_running: bool
    entries: list[IntervalResponse]


class DailySummaryResponse(BaseModel):
    date: str
    total_duration_seconds: int = 0
    groups: list[GroupResponse] = []
    overlapping_entry_ids: list[str] = []
    overlapping_pair_count: int = 0


class DayReportResponse(BaseModel):
    day: str
    date: date
    hours: float
    target: float
    progress_percent: float
    status: str


class WeeklyReportResponse(BaseModel):
    week_start: date
    week_end: date
    days: list[DayReportResponse] = []
    total_hours: float = 0.0
    target_hours: float = 0.0
    progress_percent: float = 0.0
    status: str = "under"


class DashboardResponse(BaseModel):
    today_seconds: int = 0
    week_seconds: int = 0
    previous_week_seconds: int = 0
    daily_average_seconds: float = 0.0
    active_projects: int = 0
    active_tasks: int = 0
    running_entry_id: str | None = None


class LongDayResponse(BaseModel):
    day_key: str
    hours: float


class SettingsResponse(BaseModel):
    work_hours_per_day: str
    work_hours_per_week: str
    daily_target_hours: float
    weekly_target_hours: float


class SettingsUpdate(BaseModel):
    work_hours_per_day: str
    work_hours_per_week: str

    @field_validator("work_hours_per_day")
    @classmethod
    def validate_daily(cls, v):
        if not DAILY_HOURS_RE.match(v):
            raise ValueError("Invalid time format, use HH:mm (e.g. 07:24)")
        return v

    @field_validator("work_hours_per_week")
    @classmethod
    def validate_weekly(cls, v):
        if not WEEKLY_HOURS_RE.match(v):
            raise ValueError("Invalid time format, use HH:mm (e.g. 37:00)")
        return v


class UserResponse(SQLModel):
    id: str
    email: str | None = None
    display_name: str | None = None
    role: UserRole
    created_at: datetime
    last_login: datetime | None = None
    is_last_admin: bool = False


class RoleUpdate(BaseModel):
    role: UserRole


class CurrentTimerResponse(BaseModel):
    entry: TimeEntryResponse | None = None
    elapsed_seconds: int = 0
