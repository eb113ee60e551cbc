# app.py
# =============================================================================
# Workout Tracker: personal workout log & dashboard
# (FastAPI + SQLAlchemy 2.x async, Pydantic v2, Jinja2 templates)
# Session-cookie auth. One row per workout session, owned by one user.
# =============================================================================

from __future__ import annotations

import csv
import datetime as dt
import io
import logging
import math
import os
import random
import re
import time
import traceback
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date, datetime, timezone
from pathlib import Path as OSPath
from typing import AsyncGenerator, Dict, List, Optional
from urllib.parse import urlencode

from fastapi import Depends, FastAPI, File, Form, HTTPException, Query, Request, Response, UploadFile
from fastapi import Path as FPath
from fastapi.exception_handlers import http_exception_handler
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates
from pydantic import BaseModel, ValidationError, field_validator, model_validator
from sqlalchemy import (
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    asc,
    desc,
    func,
    select,
    text,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.sessions import SessionMiddleware
from werkzeug.security import check_password_hash, generate_password_hash

import stats

# -----------------------------------------------------------------------------
# Logging
# -----------------------------------------------------------------------------
logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
log = logging.getLogger("workout-tracker")

# -----------------------------------------------------------------------------
# Config
# -----------------------------------------------------------------------------
BASE_DIR = OSPath(__file__).parent

SESSION_SECRET = os.getenv("SESSION_SECRET")
if not SESSION_SECRET:
    SESSION_SECRET = "dev-only-session-secret"
    log.warning("SESSION_SECRET not set; using an insecure development secret")

UPLOAD_DIR = OSPath(os.getenv("UPLOAD_DIR", str(BASE_DIR / "uploads")))
MAX_PHOTO_BYTES = 5 * 1024 * 1024
WORKOUTS_PER_PAGE = int(os.getenv("WORKOUTS_PER_PAGE", "10"))
RECENT_WORKOUTS = 5
MAX_DURATION_MINUTES = 24 * 60
MAX_PAGE = 10**9

WORKOUT_TYPES = [
    "Cardio", "Strength", "Yoga", "Running", "Cycling",
    "Swimming", "Walking", "HIIT", "Other",
]

# -----------------------------------------------------------------------------
# DB connection
# Priority:
#   1) env DATABASE_URL (any async SQLAlchemy URL, e.g. postgresql+asyncpg://...)
#   2) env WORKOUT_TRACKER_DB (path to a SQLite file)
#   3) ./data/workouts.db if present, else ./workouts.db
# -----------------------------------------------------------------------------
_database_url = os.getenv("DATABASE_URL")

if _database_url:
    engine = create_async_engine(_database_url, echo=False, pool_pre_ping=True)
    log.info(f"Using DATABASE_URL ({engine.dialect.name})")
else:
    env_db = os.getenv("WORKOUT_TRACKER_DB")
    if env_db:
        DB_PATH = env_db
    else:
        candidates = [
            str((BASE_DIR / "data" / "workouts.db").resolve()),
            str((BASE_DIR / "workouts.db").resolve()),
        ]
        DB_PATH = next((p for p in candidates if OSPath(p).exists()), candidates[-1])
    engine = create_async_engine(f"sqlite+aiosqlite:///{DB_PATH}", echo=False)
    log.info(f"Using SQLite (async): {DB_PATH}")

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# -----------------------------------------------------------------------------
# SQLAlchemy models
# -----------------------------------------------------------------------------
class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    def set_password(self, password: str) -> None:
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        return check_password_hash(self.password_hash, password)


class Workout(Base):
    __tablename__ = "workout"
    __table_args__ = (
        Index("ix_workout_user_date", "user_id", "date"),
        Index("ix_workout_user_type", "user_id", "type"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    notes: Mapped[str] = mapped_column(Text, nullable=False, default="")
    tags: Mapped[Optional[str]] = mapped_column(String, nullable=True)  # comma-separated, in order
    photo: Mapped[Optional[str]] = mapped_column(String, nullable=True)  # filename under UPLOAD_DIR
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    @property
    def tag_list(self) -> List[str]:
        return [t for t in (self.tags or "").split(",") if t]


# -----------------------------------------------------------------------------
# Startup: create tables
# -----------------------------------------------------------------------------
async def _init_db():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


# -----------------------------------------------------------------------------
# Form schemas
# -----------------------------------------------------------------------------
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _parse_day(v: Optional[str]) -> Optional[date]:
    """Parse YYYY-MM-DD, returning None for anything else."""
    if not v or not _DATE_RE.match(v.strip()):
        return None
    try:
        return datetime.strptime(v.strip(), "%Y-%m-%d").date()
    except ValueError:
        return None


def _split_tags(v) -> List[str]:
    if v is None:
        return []
    if isinstance(v, str):
        v = v.split(",")
    return [t.strip() for t in v if t and t.strip()]


def _validate_email(v) -> str:
    v = (v or "").strip().lower()
    if not _EMAIL_RE.match(v):
        raise ValueError("Please enter a valid email")
    return v


class SignInForm(BaseModel):
    email: str
    password: str

    @field_validator("email", mode="before")
    @classmethod
    def validate_email(cls, v) -> str:
        return _validate_email(v)

    @field_validator("password")
    @classmethod
    def password_present(cls, v: str) -> str:
        if not v:
            raise ValueError("Password is required")
        return v


class SignUpForm(BaseModel):
    name: str
    email: str
    password: str
    confirm_password: str

    @field_validator("email", mode="before")
    @classmethod
    def validate_email(cls, v) -> str:
        return _validate_email(v)

    @field_validator("name", mode="before")
    @classmethod
    def name_length(cls, v) -> str:
        v = (v or "").strip()
        if len(v) < 2:
            raise ValueError("Name must be at least 2 characters")
        return v

    @field_validator("password")
    @classmethod
    def password_length(cls, v: str) -> str:
        if len(v) < 6:
            raise ValueError("Password must be at least 6 characters")
        return v

    @model_validator(mode="after")
    def passwords_match(self) -> "SignUpForm":
        if self.password != self.confirm_password:
            raise ValueError("Passwords do not match")
        return self


class WorkoutForm(BaseModel):
    """One logged session as submitted by the new/edit forms."""
    type: str
    duration_minutes: int
    workout_date: date
    notes: str = ""
    tags: List[str] = []

    @field_validator("type", mode="before")
    @classmethod
    def validate_type(cls, v) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("Workout type is required")
        if v not in WORKOUT_TYPES:
            raise ValueError("Please choose a valid workout type")
        return v

    @field_validator("duration_minutes", mode="before")
    @classmethod
    def validate_duration(cls, v) -> int:
        try:
            minutes = int(str(v).strip())
        except (TypeError, ValueError):
            raise ValueError("Duration must be at least 1 minute")
        if minutes < 1:
            raise ValueError("Duration must be at least 1 minute")
        if minutes > MAX_DURATION_MINUTES:
            raise ValueError(f"Duration must be {MAX_DURATION_MINUTES} minutes or less")
        return minutes

    @field_validator("workout_date", mode="before")
    @classmethod
    def validate_date(cls, v):
        if isinstance(v, date):
            return v
        parsed = _parse_day(v)
        if parsed is None:
            raise ValueError("Please enter a valid date")
        return parsed

    @field_validator("notes", mode="before")
    @classmethod
    def strip_notes(cls, v) -> str:
        return (v or "").strip()

    @field_validator("tags", mode="before")
    @classmethod
    def normalize_tags(cls, v) -> List[str]:
        return _split_tags(v)

    def apply_to(self, w: Workout) -> None:
        w.type = self.type
        w.duration_minutes = self.duration_minutes
        w.date = self.workout_date
        w.notes = self.notes
        w.tags = ",".join(self.tags) or None


def _form_errors(exc: ValidationError) -> List[str]:
    """Flatten a ValidationError into the messages shown above a form."""
    messages: List[str] = []
    for err in exc.errors():
        cause = (err.get("ctx") or {}).get("error")
        messages.append(str(cause) if cause else err["msg"])
    return messages


class HealthOut(BaseModel):
    ok: bool = True
    db_connected: bool = True
    db_type: str
    timestamp: str


# -----------------------------------------------------------------------------
# Request context
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class SessionUser:
    user_id: int
    name: str


class NotAuthenticated(Exception):
    pass


class PhotoRejected(Exception):
    pass


def _session_user(request: Request) -> Optional[SessionUser]:
    if "session" not in request.scope:
        return None
    user_id = request.session.get("user_id")
    if user_id is None:
        return None
    return SessionUser(user_id=int(user_id), name=request.session.get("user_name", ""))


async def require_user(request: Request) -> SessionUser:
    user = _session_user(request)
    if user is None:
        raise NotAuthenticated()
    return user


def get_now() -> datetime:
    return datetime.now()


def _sign_in(request: Request, user: User) -> None:
    request.session["user_id"] = user.id
    request.session["user_name"] = user.name


# -----------------------------------------------------------------------------
# App (with lifespan)
# -----------------------------------------------------------------------------
UPLOAD_DIR.mkdir(parents=True, exist_ok=True)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    await _init_db()
    yield
    await engine.dispose()


app = FastAPI(
    title="Workout Tracker",
    description="Personal workout log with dashboard statistics and CSV export.",
    version="1.0.0",
    lifespan=lifespan,
)
app.add_middleware(SessionMiddleware, secret_key=SESSION_SECRET, same_site="lax")
app.mount("/uploads", StaticFiles(directory=str(UPLOAD_DIR)), name="uploads")

templates = Jinja2Templates(directory=str(BASE_DIR / "templates"))


def format_date(value, fmt: str = "%b %d, %Y") -> str:
    if value is None:
        return ""
    return value.strftime(fmt)


templates.env.filters["format_date"] = format_date


def _render(
    request: Request,
    name: str,
    context: Optional[dict] = None,
    user: Optional[SessionUser] = None,
    status_code: int = 200,
) -> HTMLResponse:
    ctx = {"current_user": user, "workout_types": WORKOUT_TYPES}
    ctx.update(context or {})
    return templates.TemplateResponse(request, name, ctx, status_code=status_code)


# -----------------------------------------------------------------------------
# Exception handlers
# -----------------------------------------------------------------------------
@app.exception_handler(NotAuthenticated)
async def _not_authenticated_handler(request: Request, exc: NotAuthenticated):
    return RedirectResponse("/auth/signin", status_code=303)


@app.exception_handler(StarletteHTTPException)
async def _http_error_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code == 404:
        return _render(
            request,
            "404.html",
            {"title": "Page Not Found", "message": exc.detail},
            user=_session_user(request),
            status_code=404,
        )
    return await http_exception_handler(request, exc)


@app.exception_handler(Exception)
async def _global_exception_handler(request: Request, exc: Exception):
    tb = traceback.format_exc()
    log.error(f"Unhandled error on {request.method} {request.url.path}: {exc}\n{tb}")
    return _render(
        request,
        "error.html",
        {"title": "Server Error", "error": f"{type(exc).__name__}: {exc}"},
        user=_session_user(request),
        status_code=500,
    )


# -----------------------------------------------------------------------------
# Method override: HTML forms send POST ...?_method=PUT|DELETE
# -----------------------------------------------------------------------------
_OVERRIDABLE_METHODS = {"PUT", "PATCH", "DELETE"}


@app.middleware("http")
async def method_override_middleware(request: Request, call_next):
    if request.method == "POST":
        override = request.query_params.get("_method", "").upper()
        if override in _OVERRIDABLE_METHODS:
            request.scope["method"] = override
    return await call_next(request)


# -----------------------------------------------------------------------------
# Rate limiting middleware (simple in-memory, per-IP)
# -----------------------------------------------------------------------------
_rate_limit_store: Dict[str, List[float]] = defaultdict(list)
RATE_LIMIT_REQUESTS = int(os.getenv("RATE_LIMIT_REQUESTS", "300"))
RATE_LIMIT_WINDOW = int(os.getenv("RATE_LIMIT_WINDOW", "60"))  # seconds


@app.middleware("http")
async def rate_limit_middleware(request: Request, call_next):
    client_ip = request.client.host if request.client else "unknown"
    now = time.time()
    window_start = now - RATE_LIMIT_WINDOW
    _rate_limit_store[client_ip] = [
        t for t in _rate_limit_store[client_ip] if t > window_start
    ]
    if len(_rate_limit_store[client_ip]) >= RATE_LIMIT_REQUESTS:
        return Response(
            content='{"detail":"Rate limit exceeded. Try again later."}',
            status_code=429,
            media_type="application/json",
        )
    _rate_limit_store[client_ip].append(now)
    # Prune stale IPs
    if len(_rate_limit_store) > 1000:
        stale = [ip for ip, ts in _rate_limit_store.items()
                 if not ts or ts[-1] < window_start]
        for ip in stale:
            del _rate_limit_store[ip]
    response = await call_next(request)
    response.headers["X-RateLimit-Limit"] = str(RATE_LIMIT_REQUESTS)
    response.headers["X-RateLimit-Remaining"] = str(
        RATE_LIMIT_REQUESTS - len(_rate_limit_store[client_ip])
    )
    return response


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
_LIKE_ESCAPE_CHAR = "!"  # ! instead of \ to avoid PG backslash issues
_ALLOWED_PHOTO_RE = re.compile(r"jpeg|jpg|png|gif")


def _parse_page(val) -> int:
    """Page number from the query string; junk and values < 1 mean page 1."""
    try:
        page = int(str(val).strip())
    except (TypeError, ValueError):
        return 1
    return min(max(page, 1), MAX_PAGE)


def _escape_like(s: str) -> str:
    return s.replace("!", "!!").replace("%", "!%").replace("_", "!_")


def _safe_like(column, term: str):
    escaped = _escape_like(term.strip().lower())
    pattern = f"%{escaped}%"
    return func.lower(column).like(pattern, escape=_LIKE_ESCAPE_CHAR)


def _owned(stmt, user: SessionUser):
    return stmt.where(Workout.user_id == user.user_id)


def _filter_workouts(
    stmt,
    user: SessionUser,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    workout_type: Optional[str] = None,
    search: Optional[str] = None,
):
    """Apply the list/export filters. The date range needs both ends."""
    stmt = _owned(stmt, user)
    start, end = _parse_day(date_from), _parse_day(date_to)
    if start and end:
        stmt = stmt.where(Workout.date >= start, Workout.date <= end)
    if workout_type:
        stmt = stmt.where(Workout.type == workout_type)
    if search and search.strip():
        stmt = stmt.where(_safe_like(Workout.notes, search))
    return stmt


def _newest_first(stmt):
    return stmt.order_by(desc(Workout.date), desc(Workout.created_at), desc(Workout.id))


async def _get_owned_workout(
    session: AsyncSession, workout_id: int, user: SessionUser
) -> Workout:
    result = await session.execute(
        _owned(select(Workout).where(Workout.id == workout_id), user)
    )
    w = result.scalar()
    if not w:
        raise HTTPException(404, "Workout not found")
    return w


async def _workouts_between(
    session: AsyncSession, user: SessionUser, start: datetime, end: datetime
) -> List[Workout]:
    result = await session.execute(
        _owned(select(Workout), user)
        .where(Workout.date >= start.date(), Workout.date <= end.date())
        .order_by(asc(Workout.date), asc(Workout.created_at), asc(Workout.id))
    )
    return list(result.scalars().all())


async def _save_photo(upload: Optional[UploadFile]) -> Optional[str]:
    """Store an uploaded image and return its filename, or None if no file was sent."""
    if upload is None or not upload.filename:
        return None
    ext = OSPath(upload.filename).suffix.lower()
    if not (_ALLOWED_PHOTO_RE.search(ext) and _ALLOWED_PHOTO_RE.search(upload.content_type or "")):
        raise PhotoRejected("Only image files are allowed")
    data = await upload.read(MAX_PHOTO_BYTES + 1)
    if len(data) > MAX_PHOTO_BYTES:
        raise PhotoRejected("Photo must be 5MB or smaller")
    filename = f"{int(time.time() * 1000)}-{random.randint(0, 10**9 - 1):09d}{ext}"
    (UPLOAD_DIR / filename).write_bytes(data)
    return filename


def _discard_photo(filename: Optional[str]) -> None:
    if filename:
        (UPLOAD_DIR / filename).unlink(missing_ok=True)
        log.info(f"Removed unsaved upload {filename}")


def _filter_query(params, keys) -> str:
    """Re-encode the non-empty filters in ``keys`` for use in a link."""
    return urlencode([(k, params[k]) for k in keys if params.get(k)])


def _workout_form_data(w: Workout) -> dict:
    return {
        "type": w.type,
        "duration": w.duration_minutes,
        "date": w.date.isoformat(),
        "notes": w.notes or "",
        "tags": ", ".join(w.tag_list),
    }


CSV_HEADER = ["Date", "Type", "Duration (minutes)", "Notes", "Tags"]


def _workouts_csv(rows: List[Workout]) -> str:
    buf = io.StringIO()
    buf.write(",".join(CSV_HEADER) + "\n")
    writer = csv.writer(buf, quoting=csv.QUOTE_ALL, lineterminator="\n")
    for w in rows:
        writer.writerow([
            w.date.isoformat(),
            w.type,
            w.duration_minutes,
            w.notes or "",
            "; ".join(w.tag_list),
        ])
    return buf.getvalue()


def _db_type() -> str:
    """Return a safe description of the DB type (no credentials)."""
    if engine.dialect.name == "postgresql":
        return "PostgreSQL"
    return "SQLite"


# -----------------------------------------------------------------------------
# Health
# -----------------------------------------------------------------------------
@app.get("/health", response_model=HealthOut)
async def health() -> HealthOut:
    db_connected = False
    try:
        async with async_session() as s:
            await s.execute(text("SELECT 1"))
            db_connected = True
    except Exception as e:
        log.error(f"Health check DB query failed: {e}")
    return HealthOut(
        ok=db_connected,
        db_connected=db_connected,
        db_type=_db_type(),
        timestamp=_utcnow().isoformat(),
    )


# -----------------------------------------------------------------------------
# Auth
# -----------------------------------------------------------------------------
@app.get("/auth/signin", response_class=HTMLResponse)
async def signin_page(request: Request):
    if _session_user(request):
        return RedirectResponse("/dashboard", status_code=303)
    return _render(request, "auth/signin.html", {"title": "Sign In", "errors": [], "email": ""})


@app.post("/auth/signin", response_class=HTMLResponse)
async def signin(
    request: Request,
    email: str = Form(""),
    password: str = Form(""),
):
    def _again(errors: List[str]):
        return _render(
            request, "auth/signin.html", {"title": "Sign In", "errors": errors, "email": email}
        )

    try:
        form = SignInForm(email=email, password=password)
    except ValidationError as e:
        return _again(_form_errors(e))

    async with async_session() as s:
        result = await s.execute(select(User).where(User.email == form.email))
        user = result.scalar()
    if not user or not user.check_password(form.password):
        log.info(f"Failed sign-in for {form.email}")
        return _again(["Invalid email or password"])

    _sign_in(request, user)
    log.info(f"User {user.id} signed in")
    return RedirectResponse("/dashboard", status_code=303)


@app.get("/auth/signup", response_class=HTMLResponse)
async def signup_page(request: Request):
    if _session_user(request):
        return RedirectResponse("/dashboard", status_code=303)
    return _render(request, "auth/signup.html", {"title": "Sign Up", "errors": [], "form_data": {}})


@app.post("/auth/signup", response_class=HTMLResponse)
async def signup(
    request: Request,
    name: str = Form(""),
    email: str = Form(""),
    password: str = Form(""),
    confirm_password: str = Form(""),
):
    form_data = {"name": name, "email": email}

    def _again(errors: List[str]):
        return _render(
            request, "auth/signup.html",
            {"title": "Sign Up", "errors": errors, "form_data": form_data},
        )

    try:
        form = SignUpForm(
            name=name, email=email, password=password, confirm_password=confirm_password
        )
    except ValidationError as e:
        return _again(_form_errors(e))

    async with async_session() as s:
        existing = await s.execute(select(User.id).where(User.email == form.email))
        if existing.scalar() is not None:
            return _again(["User with this email already exists"])
        user = User(name=form.name, email=form.email)
        user.set_password(form.password)
        s.add(user)
        try:
            await s.commit()
        except IntegrityError:
            await s.rollback()
            return _again(["User with this email already exists"])

    _sign_in(request, user)
    log.info(f"User {user.id} signed up")
    return RedirectResponse("/dashboard", status_code=303)


@app.post("/auth/signout")
async def signout(request: Request):
    user = _session_user(request)
    request.session.clear()
    if user:
        log.info(f"User {user.user_id} signed out")
    return RedirectResponse("/auth/signin", status_code=303)


@app.get("/")
async def root(user: SessionUser = Depends(require_user)):
    return RedirectResponse("/dashboard", status_code=303)


# -----------------------------------------------------------------------------
# Dashboard & statistics
# -----------------------------------------------------------------------------
@app.get("/dashboard", response_class=HTMLResponse)
async def dashboard(
    request: Request,
    user: SessionUser = Depends(require_user),
    now: datetime = Depends(get_now),
):
    week_start, week_end = stats.date_range_for_period("week", now)
    month_start, month_end = stats.date_range_for_period("month", now)

    async with async_session() as s:
        result = await s.execute(
            _newest_first(_owned(select(Workout), user)).limit(RECENT_WORKOUTS)
        )
        recent = result.scalars().all()
        week_rows = await _workouts_between(s, user, week_start, week_end)
        month_rows = await _workouts_between(s, user, month_start, month_end)
        dates_result = await s.execute(
            _owned(select(Workout.date), user).distinct()
        )
        workout_dates = [d for (d,) in dates_result.all()]

    week = stats.period_aggregate(week_rows)
    month = stats.period_aggregate(month_rows)
    streak = stats.compute_streak(workout_dates, now)

    return _render(
        request,
        "dashboard/index.html",
        {
            "title": "Dashboard",
            "user_name": user.name,
            "recent_workouts": recent,
            "week": week,
            "month": month,
            "type_breakdown": month.type_breakdown,
            "streak": streak,
        },
        user=user,
    )


@app.get("/dashboard/stats", response_class=HTMLResponse)
async def statistics(
    request: Request,
    period: Optional[str] = Query(None, description="week, month or year"),
    user: SessionUser = Depends(require_user),
    now: datetime = Depends(get_now),
):
    period = stats.normalize_period(period)
    start, end = stats.date_range_for_period(period, now)

    async with async_session() as s:
        rows = await _workouts_between(s, user, start, end)

    aggregate = stats.period_aggregate(rows)
    return _render(
        request,
        "dashboard/stats.html",
        {
            "title": "Statistics",
            "period": period,
            "start": start,
            "end": end,
            "total_minutes": aggregate.total_minutes,
            "total_sessions": aggregate.session_count,
            "average_duration": aggregate.average_duration,
            "type_stats": stats.type_stats(rows),
            "daily_stats": stats.daily_stats(rows),
            "workouts": rows,
        },
        user=user,
    )


# -----------------------------------------------------------------------------
# Workouts - list & export
# IMPORTANT: define /workouts/new and /workouts/export/csv BEFORE /workouts/{id}
# -----------------------------------------------------------------------------
@app.get("/workouts", response_class=HTMLResponse)
async def list_workouts(
    request: Request,
    page: Optional[str] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    workout_type: Optional[str] = Query(None, alias="type"),
    search: Optional[str] = None,
    user: SessionUser = Depends(require_user),
):
    current_page = _parse_page(page)
    filters = dict(date_from=date_from, date_to=date_to, workout_type=workout_type, search=search)

    async with async_session() as s:
        result = await s.execute(
            _newest_first(_filter_workouts(select(Workout), user, **filters))
            .limit(WORKOUTS_PER_PAGE)
            .offset((current_page - 1) * WORKOUTS_PER_PAGE)
        )
        rows = result.scalars().all()
        total_result = await s.execute(
            _filter_workouts(select(func.count()).select_from(Workout), user, **filters)
        )
        total = int(total_result.scalar_one())

    return _render(
        request,
        "workouts/index.html",
        {
            "title": "My Workouts",
            "workouts": rows,
            "current_page": current_page,
            "total_pages": math.ceil(total / WORKOUTS_PER_PAGE),
            "total_workouts": total,
            "filters": dict(request.query_params),
            "page_query": _filter_query(request.query_params, ("date_from", "date_to", "type", "search")),
            "export_query": _filter_query(request.query_params, ("date_from", "date_to", "type")),
        },
        user=user,
    )


@app.get("/workouts/export/csv")
async def export_csv(
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    workout_type: Optional[str] = Query(None, alias="type"),
    user: SessionUser = Depends(require_user),
) -> Response:
    async with async_session() as s:
        result = await s.execute(
            _newest_first(
                _filter_workouts(
                    select(Workout), user,
                    date_from=date_from, date_to=date_to, workout_type=workout_type,
                )
            )
        )
        rows = result.scalars().all()

    log.info(f"User {user.user_id} exported {len(rows)} workouts")
    return Response(
        content=_workouts_csv(rows),
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="workouts.csv"'},
    )


# -----------------------------------------------------------------------------
# Workouts - create
# -----------------------------------------------------------------------------
@app.get("/workouts/new", response_class=HTMLResponse)
async def new_workout_page(
    request: Request,
    user: SessionUser = Depends(require_user),
    now: datetime = Depends(get_now),
):
    return _render(
        request,
        "workouts/new.html",
        {
            "title": "Add New Workout",
            "errors": [],
            "form_data": {"type": "", "duration": "", "date": now.date().isoformat(), "notes": "", "tags": ""},
        },
        user=user,
    )


@app.post("/workouts", response_class=HTMLResponse)
async def create_workout(
    request: Request,
    workout_type: str = Form("", alias="type"),
    duration: str = Form(""),
    workout_date: str = Form("", alias="date"),
    notes: str = Form(""),
    tags: str = Form(""),
    photo: Optional[UploadFile] = File(None),
    user: SessionUser = Depends(require_user),
):
    form_data = {"type": workout_type, "duration": duration, "date": workout_date, "notes": notes, "tags": tags}
    try:
        form = WorkoutForm(
            type=workout_type, duration_minutes=duration,
            workout_date=workout_date, notes=notes, tags=tags,
        )
        filename = await _save_photo(photo)
    except ValidationError as e:
        errors = _form_errors(e)
    except PhotoRejected as e:
        errors = [str(e)]
    else:
        w = Workout(user_id=user.user_id, photo=filename)
        form.apply_to(w)
        try:
            async with async_session() as s:
                s.add(w)
                await s.commit()
        except Exception:
            _discard_photo(filename)
            raise
        log.info(f"User {user.user_id} logged workout {w.id} ({w.type}, {w.duration_minutes} min)")
        return RedirectResponse("/workouts", status_code=303)

    return _render(
        request,
        "workouts/new.html",
        {"title": "Add New Workout", "errors": errors, "form_data": form_data},
        user=user,
    )


# -----------------------------------------------------------------------------
# Workouts - read / edit / delete
# -----------------------------------------------------------------------------
@app.get("/workouts/{workout_id}", response_class=HTMLResponse)
async def show_workout(
    request: Request,
    workout_id: int = FPath(..., ge=1),
    user: SessionUser = Depends(require_user),
):
    async with async_session() as s:
        w = await _get_owned_workout(s, workout_id, user)
    return _render(request, "workouts/show.html", {"title": "Workout Details", "workout": w}, user=user)


@app.get("/workouts/{workout_id}/edit", response_class=HTMLResponse)
async def edit_workout_page(
    request: Request,
    workout_id: int = FPath(..., ge=1),
    user: SessionUser = Depends(require_user),
):
    async with async_session() as s:
        w = await _get_owned_workout(s, workout_id, user)
    return _render(
        request,
        "workouts/edit.html",
        {"title": "Edit Workout", "workout": w, "errors": [], "form_data": _workout_form_data(w)},
        user=user,
    )


@app.put("/workouts/{workout_id}", response_class=HTMLResponse)
async def update_workout(
    request: Request,
    workout_id: int = FPath(..., ge=1),
    workout_type: str = Form("", alias="type"),
    duration: str = Form(""),
    workout_date: str = Form("", alias="date"),
    notes: str = Form(""),
    tags: str = Form(""),
    photo: Optional[UploadFile] = File(None),
    user: SessionUser = Depends(require_user),
):
    form_data = {"type": workout_type, "duration": duration, "date": workout_date, "notes": notes, "tags": tags}
    async with async_session() as s:
        w = await _get_owned_workout(s, workout_id, user)
        try:
            form = WorkoutForm(
                type=workout_type, duration_minutes=duration,
                workout_date=workout_date, notes=notes, tags=tags,
            )
            filename = await _save_photo(photo)
        except ValidationError as e:
            errors = _form_errors(e)
        except PhotoRejected as e:
            errors = [str(e)]
        else:
            form.apply_to(w)
            if filename:
                w.photo = filename
            try:
                await s.commit()
            except Exception:
                _discard_photo(filename)
                raise
            log.info(f"User {user.user_id} updated workout {w.id}")
            return RedirectResponse("/workouts", status_code=303)

    return _render(
        request,
        "workouts/edit.html",
        {"title": "Edit Workout", "workout": w, "errors": errors, "form_data": form_data},
        user=user,
    )


@app.delete("/workouts/{workout_id}")
async def delete_workout(
    workout_id: int = FPath(..., ge=1),
    user: SessionUser = Depends(require_user),
):
    async with async_session() as s:
        result = await s.execute(
            _owned(select(Workout).where(Workout.id == workout_id), user)
        )
        w = result.scalar()
        if not w:
            return JSONResponse(
                status_code=404, content={"success": False, "message": "Workout not found"}
            )
        await s.delete(w)
        await s.commit()
    log.info(f"User {user.user_id} deleted workout {workout_id}")
    return {"success": True}
