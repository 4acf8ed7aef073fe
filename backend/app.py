import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import UTC, date, datetime, timedelta
from zoneinfo import ZoneInfo

from fastapi import Depends, FastAPI, Header, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from sqlmodel import Session, func, select

from config import CORS_ORIGINS, resolve_timezone
from db import create_db_and_tables, get_session
from models import Project, TimeEntry, User, utcnow
from schemas import (
    CurrentTimerResponse,
    DailySummaryResponse,
    DashboardResponse,
    GroupResponse,
    IntervalResponse,
    LongDayResponse,
    ProjectCreate,
    ProjectResponse,
    ProjectStats,
    ProjectUpdate,
    RoleUpdate,
    SettingsResponse,
    SettingsUpdate,
    StatsResponse,
    TimeEntryCreate,
    TimeEntryResponse,
    TimeEntryUpdate,
    TimerStart,
    UserResponse,
    WeeklyReportResponse,
)
from site_settings import get_settings, target_hours, update_settings
from timecalc import (
    ONE_SECOND,
    as_utc,
    build_weekly_report,
    daily_totals,
    day_bounds,
    detect_long_days,
    group_by_project_and_task,
    normalize,
    normalize_all,
    overlapping_pairs,
    task_key,
    week_start_of,
)
from timers import (
    NoRunningTimer,
    TimerConflict,
    current_timer,
    release_pointer,
    resume_entry,
    start_timer,
    stop_timer,
)
from users import (
    LastAdminError,
    admin_count,
    can_manage_projects,
    can_write,
    change_role,
    delete_user,
    ensure_user,
    is_admin,
)

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database on startup."""
    create_db_and_tables()
    logger.info("Database initialized")
    yield


# Create FastAPI app
app = FastAPI(title="Time Tracker API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Dependencies

def get_current_user(
    x_user_id: str | None = Header(None, description="Verified uid forwarded by the identity provider"),
    x_user_email: str | None = Header(None),
    session: Session = Depends(get_session),
) -> User:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="No user identity provided")
    return ensure_user(session, x_user_id, x_user_email)


def require_writer(user: User = Depends(get_current_user)) -> User:
    if not can_write(user.role):
        raise HTTPException(status_code=403, detail="Read-only account")
    return user


def require_admin(user: User = Depends(get_current_user)) -> User:
    if not is_admin(user.role):
        raise HTTPException(status_code=403, detail="Admin role required")
    return user


def get_timezone(
    tz: str | None = Query(None, description="IANA time zone of the viewer, e.g. Europe/Paris"),
) -> ZoneInfo:
    try:
        return resolve_timezone(tz)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e


# Helpers

def parse_day(value: str | None, tz: ZoneInfo) -> date:
    """Parse YYYY-MM-DD, defaulting to today in the viewer's zone."""
    if not value:
        return datetime.now(tz).date()
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError as e:
        raise HTTPException(status_code=400, detail="Invalid date format. Use YYYY-MM-DD") from e


def entry_response(entry: TimeEntry) -> TimeEntryResponse:
    return TimeEntryResponse(
        id=entry.id,
        user_id=entry.user_id,
        project_id=entry.project_id,
        task=entry.task,
        notes=entry.notes,
        tags=entry.tags or [],
        start_time=as_utc(entry.start_time),
        end_time=as_utc(entry.end_time) if entry.end_time else None,
        duration=entry.duration,
        is_running=entry.is_running,
    )


def project_response(project: Project) -> ProjectResponse:
    return ProjectResponse(
        id=project.id,
        name=project.name,
        description=project.description,
        created_by=project.created_by,
        created_at=as_utc(project.created_at),
        updated_at=as_utc(project.updated_at),
    )


def user_response(user: User, admins: int) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        display_name=user.display_name,
        role=user.role,
        created_at=as_utc(user.created_at),
        last_login=as_utc(user.last_login) if user.last_login else None,
        is_last_admin=is_admin(user.role) and admins <= 1,
    )


def group_response(group) -> GroupResponse:
    return GroupResponse(
        project_id=group.project_id,
        task=group.task,
        total_duration_seconds=group.total_duration_seconds,
        entry_count=group.entry_count,
        is_running=group.is_running,
        entries=[
            IntervalResponse(
                id=i.id,
                project_id=i.project_id,
                task=i.task,
                day_key=i.day_key,
                start_time=i.start_time,
                end_time=i.end_time,
                duration_seconds=i.duration_seconds,
                is_running=i.is_running,
            )
            for i in group.entries
        ],
    )


def load_entries(
    session: Session,
    user_id: str,
    start: datetime | None = None,
    end: datetime | None = None,
    project_id: str | None = None,
    task: str | None = None,
) -> list[TimeEntry]:
    """Entries of a user, newest first; ``start`` inclusive, ``end`` exclusive."""
    stmt = select(TimeEntry).where(TimeEntry.user_id == user_id)
    if project_id:
        stmt = stmt.where(TimeEntry.project_id == project_id)
    if start:
        stmt = stmt.where(TimeEntry.start_time >= start.astimezone(UTC))
    if end:
        stmt = stmt.where(TimeEntry.start_time < end.astimezone(UTC))
    if task:
        pattern = task.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        stmt = stmt.where(TimeEntry.task.ilike(f"%{pattern}%", escape="\\"))
    return list(session.exec(stmt.order_by(TimeEntry.start_time.desc())).all())


def existing_project(session: Session, project_id: str) -> Project:
    project = session.get(Project, project_id)
    if not project:
        raise HTTPException(status_code=404, detail="Project not found")
    return project


def owned_project(session: Session, project_id: str, user: User) -> Project:
    project = existing_project(session, project_id)
    if project.created_by != user.id and not is_admin(user.role):
        raise HTTPException(status_code=403, detail="Not authorized")
    return project


def owned_entry(session: Session, entry_id: str, user: User) -> TimeEntry:
    entry = session.get(TimeEntry, entry_id)
    if not entry:
        raise HTTPException(status_code=404, detail="Time entry not found")
    if entry.user_id != user.id:
        raise HTTPException(status_code=403, detail="Not authorized")
    return entry


# Health

@app.get("/health")
def health():
    """Liveness check."""
    return {"status": "OK", "message": "Server is running"}


@app.get("/")
def root():
    """Root endpoint."""
    return {"message": "Time Tracker API", "docs": "/docs"}


# Projects

@app.get("/api/projects", response_model=list[ProjectResponse])
def get_projects(
    mine: bool = Query(False, description="Only projects created by the current user"),
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    """List projects, newest first; ``mine=true`` keeps only the caller's own."""
    stmt = select(Project)
    if mine:
        stmt = stmt.where(Project.created_by == user.id)
    projects = session.exec(stmt.order_by(Project.created_at.desc())).all()
    return [project_response(p) for p in projects]


@app.post("/api/projects", response_model=ProjectResponse, status_code=201)
def create_project(
    request: ProjectCreate,
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    if not can_manage_projects(user.role):
        raise HTTPException(status_code=403, detail="Not allowed to manage projects")
    try:
        project = Project(name=request.name, description=request.description, created_by=user.id)
        session.add(project)
        session.commit()
        session.refresh(project)
        logger.info(f"Created project {project.id} for user {user.id}")
        return project_response(project)
    except Exception as e:
        session.rollback()
        logger.error(f"Error creating project: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e)) from e


@app.put("/api/projects/{project_id}", response_model=ProjectResponse)
def update_project(
    project_id: str,
    request: ProjectUpdate,
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    if not can_manage_projects(user.role):
        raise HTTPException(status_code=403, detail="Not allowed to manage projects")
    project = owned_project(session, project_id, user)
    if request.name:
        project.name = request.name
    if request.description is not None:
        project.description = request.description
    project.updated_at = utcnow()
    session.add(project)
    session.commit()
    session.refresh(project)
    return project_response(project)


@app.delete("/api/projects/{project_id}")
def delete_project(
    project_id: str,
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    if not can_manage_projects(user.role):
        raise HTTPException(status_code=403, detail="Not allowed to manage projects")
    project = owned_project(session, project_id, user)
    session.delete(project)
    session.commit()
    logger.info(f"Deleted project {project_id}")
    return {"ok": True, "message": "Project deleted successfully"}


# Time entries

@app.get("/api/time-entries/stats", response_model=StatsResponse)
def get_time_stats(
    start_date: datetime | None = Query(None, description="Only entries starting at or after this time"),
    end_date: datetime | None = Query(None, description="Only entries starting before this time"),
    project_id: str | None = Query(None),
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
    tz: ZoneInfo = Depends(get_timezone),
):
    """Total and per-project durations; running entries count up to now."""
    try:
        entries = load_entries(
            session,
            user.id,
            start=as_utc(start_date) if start_date else None,
            end=as_utc(end_date) if end_date else None,
            project_id=project_id,
        )
        intervals = normalize_all(entries, utcnow(), tz)

        project_stats: dict[str, ProjectStats] = {}
        for interval in intervals:
            stats = project_stats.setdefault(
                interval.project_id, ProjectStats(total_duration=0, number_of_entries=0)
            )
            stats.total_duration += interval.duration_seconds
            stats.number_of_entries += 1

        total = sum(i.duration_seconds for i in intervals)
        return StatsResponse(
            total_duration=total,
            number_of_entries=len(intervals),
            average_duration=total / len(intervals) if intervals else 0.0,
            project_stats=project_stats,
        )
    except Exception as e:
        logger.error(f"Error computing stats: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e)) from e


@app.get("/api/time-entries", response_model=list[TimeEntryResponse])
def get_time_entries(
    start_date: datetime | None = Query(None, description="Only entries starting at or after this time"),
    end_date: datetime | None = Query(None, description="Only entries starting before this time"),
    project_id: str | None = Query(None),
    task: str | None = Query(None, description="Case-insensitive task search"),
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    """List the current user's entries, newest first."""
    logger.info(f"Time entries request - user: {user.id}, from: {start_date}, to: {end_date}")
    entries = load_entries(
        session,
        user.id,
        start=as_utc(start_date) if start_date else None,
        end=as_utc(end_date) if end_date else None,
        project_id=project_id,
        task=task,
    )
    return [entry_response(e) for e in entries]


@app.post("/api/time-entries", response_model=TimeEntryResponse, status_code=201)
def create_time_entry(
    request: TimeEntryCreate,
    user: User = Depends(require_writer),
    session: Session = Depends(get_session),
):
    """Record a finished entry manually."""
    existing_project(session, request.project_id)

    if request.end_time is None:
        end_time = request.start_time + timedelta(seconds=request.duration)
    else:
        end_time = request.end_time
    duration = request.duration
    if duration is None:
        duration = (end_time - request.start_time) // ONE_SECOND

    try:
        entry = TimeEntry(
            user_id=user.id,
            project_id=request.project_id,
            task=request.task,
            notes=request.notes,
            tags=request.tags,
            start_time=request.start_time,
            end_time=end_time,
            duration=duration,
            is_running=False,
        )
        session.add(entry)
        session.commit()
        session.refresh(entry)
        logger.info(f"Created time entry {entry.id} for user {user.id}")
        return entry_response(entry)
    except Exception as e:
        session.rollback()
        logger.error(f"Error creating time entry: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e)) from e


@app.put("/api/time-entries/{entry_id}", response_model=TimeEntryResponse)
def update_time_entry(
    entry_id: str,
    request: TimeEntryUpdate,
    user: User = Depends(require_writer),
    session: Session = Depends(get_session),
):
    entry = owned_entry(session, entry_id, user)
    changes_times = any(v is not None for v in (request.start_time, request.end_time, request.duration))
    if entry.is_running and changes_times:
        raise HTTPException(status_code=409, detail="Stop the timer before editing its times")

    if request.project_id is not None:
        existing_project(session, request.project_id)
        entry.project_id = request.project_id
    if request.task is not None:
        entry.task = request.task
    if request.notes is not None:
        entry.notes = request.notes
    if request.tags is not None:
        entry.tags = request.tags

    if changes_times:
        start = request.start_time or as_utc(entry.start_time)
        if request.duration is not None and request.end_time is None:
            end = start + timedelta(seconds=request.duration)
        else:
            end = request.end_time or as_utc(entry.end_time)
        if end < start:
            raise HTTPException(status_code=400, detail="end_time must not be before start_time")
        duration = (end - start) // ONE_SECOND
        if request.duration is not None and request.duration != duration:
            raise HTTPException(status_code=400, detail="duration does not match start_time and end_time")
        entry.start_time = start
        entry.end_time = end
        entry.duration = duration

    entry.updated_at = utcnow()
    session.add(entry)
    session.commit()
    session.refresh(entry)
    return entry_response(entry)


@app.delete("/api/time-entries/{entry_id}")
def delete_time_entry(
    entry_id: str,
    user: User = Depends(require_writer),
    session: Session = Depends(get_session),
):
    """Delete an entry; deleting the running one also clears the timer."""
    entry = owned_entry(session, entry_id, user)
    try:
        if entry.is_running:
            release_pointer(session, user.id, entry.id)
        session.delete(entry)
        session.commit()
        logger.info(f"Successfully deleted time entry {entry_id}")
        return {"ok": True, "message": "Time entry deleted successfully"}
    except Exception as e:
        session.rollback()
        logger.error(f"Error deleting time entry: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e)) from e


@app.post("/api/time-entries/{entry_id}/resume", response_model=TimeEntryResponse)
def resume_time_entry(
    entry_id: str,
    user: User = Depends(require_writer),
    session: Session = Depends(get_session),
):
    entry = owned_entry(session, entry_id, user)
    try:
        return entry_response(resume_entry(session, user.id, entry))
    except TimerConflict as e:
        raise HTTPException(status_code=409, detail=str(e)) from e


# Timers

@app.get("/api/timers/current", response_model=CurrentTimerResponse)
def get_current_timer(
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
    tz: ZoneInfo = Depends(get_timezone),
):
    entry = current_timer(session, user.id)
    if entry is None:
        return CurrentTimerResponse()
    interval = normalize(entry, utcnow(), tz)
    return CurrentTimerResponse(entry=entry_response(entry), elapsed_seconds=interval.duration_seconds)


@app.post("/api/timers/start", response_model=TimeEntryResponse, status_code=201)
def start_time_entry(
    request: TimerStart,
    user: User = Depends(require_writer),
    session: Session = Depends(get_session),
):
    """Start a timer; any timer already running for the user is stopped first."""
    existing_project(session, request.project_id)
    try:
        entry = start_timer(session, user.id, request.project_id, request.task, request.tags)
    except TimerConflict as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    return entry_response(entry)


@app.post("/api/timers/stop", response_model=TimeEntryResponse)
def stop_time_entry(
    user: User = Depends(require_writer),
    session: Session = Depends(get_session),
):
    try:
        entry = stop_timer(session, user.id)
    except NoRunningTimer as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except TimerConflict as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    return entry_response(entry)


# Summaries

@app.get("/api/summary/daily", response_model=DailySummaryResponse)
def get_daily_summary(
    day: str | None = Query(None, alias="date", description="Day in YYYY-MM-DD format (default: today)"),
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
    tz: ZoneInfo = Depends(get_timezone),
):
    """Entries of one day grouped by project and task, with overlaps."""
    target_day = parse_day(day, tz)
    day_key = target_day.isoformat()

    try:
        start, end = day_bounds(target_day, tz)
        intervals = normalize_all(load_entries(session, user.id, start, end), utcnow(), tz)
        groups = group_by_project_and_task(intervals)
        pairs = overlapping_pairs(intervals)
        overlapping_ids = sorted({entry_id for pair in pairs for entry_id in pair})

        return DailySummaryResponse(
            date=day_key,
            total_duration_seconds=sum(i.duration_seconds for i in intervals),
            groups=[group_response(g) for g in groups],
            overlapping_entry_ids=overlapping_ids,
            overlapping_pair_count=len(pairs),
        )
    except Exception as e:
        logger.error(f"Error building daily summary for {day_key}: {str(e)}")
        return DailySummaryResponse(date=day_key)


@app.get("/api/summary/week", response_model=WeeklyReportResponse)
def get_week_summary(
    week_start: str | None = Query(None, description="Any day of the week in YYYY-MM-DD format (default: this week)"),
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
    tz: ZoneInfo = Depends(get_timezone),
):
    """Hours per day of a Sunday-to-Saturday week against the site targets."""
    first_day = week_start_of(parse_day(week_start, tz))
    logger.info(f"Week summary request for user {user.id}, week starting: {first_day}")

    try:
        daily_target, weekly_target = target_hours(get_settings(session))
        start, _ = day_bounds(first_day, tz)
        _, end = day_bounds(first_day + timedelta(days=6), tz)
        intervals = normalize_all(load_entries(session, user.id, start, end), utcnow(), tz)

        report = build_weekly_report(intervals, first_day, daily_target, weekly_target)
        return WeeklyReportResponse(
            week_start=report.week_start,
            week_end=report.week_end,
            days=[asdict(d) for d in report.days],
            total_hours=report.total_hours,
            target_hours=report.target_hours,
            progress_percent=report.progress_percent,
            status=report.status,
        )
    except Exception as e:
        logger.error(f"Error building weekly report: {str(e)}")
        return WeeklyReportResponse(week_start=first_day, week_end=first_day + timedelta(days=6))


@app.get("/api/summary/dashboard", response_model=DashboardResponse)
def get_dashboard(
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
    tz: ZoneInfo = Depends(get_timezone),
):
    """Today, this week and last week at a glance."""
    try:
        now = utcnow()
        today = datetime.now(tz).date()
        this_week = week_start_of(today)
        previous_week = this_week - timedelta(days=7)

        start, _ = day_bounds(previous_week, tz)
        intervals = normalize_all(load_entries(session, user.id, start=start), now, tz)
        totals = daily_totals(intervals)

        def total_between(first: date, last: date) -> int:
            return sum(s for k, s in totals.items() if first.isoformat() <= k <= last.isoformat())

        week_seconds = total_between(this_week, this_week + timedelta(days=6))
        days_elapsed = (today - this_week).days + 1

        active_projects = session.exec(
            select(func.count()).select_from(Project).where(Project.created_by == user.id)
        ).one()
        tasks = session.exec(select(TimeEntry.task).where(TimeEntry.user_id == user.id).distinct()).all()
        running = current_timer(session, user.id)

        return DashboardResponse(
            today_seconds=totals.get(today.isoformat(), 0),
            week_seconds=week_seconds,
            previous_week_seconds=total_between(previous_week, previous_week + timedelta(days=6)),
            daily_average_seconds=week_seconds / days_elapsed,
            active_projects=active_projects,
            active_tasks=len({task_key(t) for t in tasks if t and t.strip()}),
            running_entry_id=running.id if running else None,
        )
    except Exception as e:
        logger.error(f"Error building dashboard for user {user.id}: {str(e)}")
        return DashboardResponse()


@app.get("/api/summary/long-days", response_model=list[LongDayResponse])
def get_long_days(
    date_from: str | None = Query(None, description="First day (YYYY-MM-DD), default 30 days ago"),
    date_to: str | None = Query(None, description="Last day (YYYY-MM-DD), default today"),
    threshold_hours: float | None = Query(None, ge=0, description="Default: the daily target"),
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
    tz: ZoneInfo = Depends(get_timezone),
):
    """Days whose total worked time exceeds the threshold, newest first."""
    last_day = parse_day(date_to, tz)
    first_day = parse_day(date_from, tz) if date_from else last_day - timedelta(days=30)
    if first_day > last_day:
        raise HTTPException(status_code=400, detail="date_from must not be after date_to")

    try:
        if threshold_hours is None:
            threshold_hours, _ = target_hours(get_settings(session))
        start, _ = day_bounds(first_day, tz)
        _, end = day_bounds(last_day, tz)
        intervals = normalize_all(load_entries(session, user.id, start, end), utcnow(), tz)
        return [
            LongDayResponse(day_key=d.day_key, hours=d.hours)
            for d in detect_long_days(daily_totals(intervals), threshold_hours)
        ]
    except Exception as e:
        logger.error(f"Error detecting long days: {str(e)}")
        return []


# Settings

def settings_response(session: Session) -> SettingsResponse:
    settings = get_settings(session)
    daily, weekly = target_hours(settings)
    return SettingsResponse(
        work_hours_per_day=settings.work_hours_per_day,
        work_hours_per_week=settings.work_hours_per_week,
        daily_target_hours=daily,
        weekly_target_hours=weekly,
    )


@app.get("/api/settings", response_model=SettingsResponse)
def read_settings(user: User = Depends(get_current_user), session: Session = Depends(get_session)):
    return settings_response(session)


@app.put("/api/settings", response_model=SettingsResponse)
def write_settings(
    request: SettingsUpdate,
    user: User = Depends(require_admin),
    session: Session = Depends(get_session),
):
    try:
        update_settings(session, request.work_hours_per_day, request.work_hours_per_week)
    except Exception as e:
        session.rollback()
        logger.error(f"Error updating settings: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e)) from e
    return settings_response(session)


# Users

@app.get("/api/users/me", response_model=UserResponse)
def read_me(user: User = Depends(get_current_user), session: Session = Depends(get_session)):
    return user_response(user, admin_count(session))


@app.get("/api/users", response_model=list[UserResponse])
def list_users(user: User = Depends(require_admin), session: Session = Depends(get_session)):
    admins = admin_count(session)
    users = session.exec(select(User).order_by(User.created_at)).all()
    return [user_response(u, admins) for u in users]


@app.put("/api/users/{user_id}/role", response_model=UserResponse)
def update_user_role(
    user_id: str,
    request: RoleUpdate,
    user: User = Depends(require_admin),
    session: Session = Depends(get_session),
):
    target = session.get(User, user_id)
    if not target:
        raise HTTPException(status_code=404, detail="User not found")
    try:
        target = change_role(session, target, request.role)
    except LastAdminError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    logger.info(f"User {user.id} set role of {user_id} to {request.role.value}")
    return user_response(target, admin_count(session))


@app.delete("/api/users/{user_id}")
def remove_user(
    user_id: str,
    user: User = Depends(require_admin),
    session: Session = Depends(get_session),
):
    target = session.get(User, user_id)
    if not target:
        raise HTTPException(status_code=404, detail="User not found")
    try:
        delete_user(session, target)
    except LastAdminError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    logger.info(f"User {user.id} deleted user {user_id}")
    return {"ok": True, "message": "User deleted successfully"}
