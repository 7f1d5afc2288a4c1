"""Database tables and engine setup for FleetSync."""

from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Time,
    UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

metadata = MetaData()

installations = Table(
    "installations",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("installation_code", String(64), nullable=False, unique=True),
    Column("name", String(256), nullable=False),
)

robots = Table(
    "robots",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("agent_id", String(128), nullable=False, unique=True),
    Column("name", String(256), nullable=False),
    Column("model", String(128)),
    Column("serial_number", String(128)),
    Column("host", String(256)),
    Column("port", Integer),
    Column("installation_code", String(64)),
    Column("current_area_id", String(64)),
    Column("capabilities", JSON),  # ordered list of capability tokens
    Column("video_streams", JSON),  # list of {name, url, type}
    Column("status", String(32), nullable=False, default="Offline"),
    Column("battery_level", Float),
    Column("battery_state", String(32)),
    Column("pressure_level", Float),
    Column("pose", JSON),
    Column("current_mission_run_id", String(64)),
    Column("deprecated", Boolean, nullable=False, default=False),
    Column("created_at", DateTime(timezone=True)),
    Column("updated_at", DateTime(timezone=True)),
)

mission_definitions = Table(
    "mission_definitions",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("name", String(256), nullable=False),
    Column("comment", String(1024)),
    Column("inspection_frequency_days", Float),
    Column("installation_code", String(64)),
    Column("auto_schedule", JSON),  # {time_of_day: ["HH:MM:SS"], days_of_week: ["Monday", ...]}
    Column("last_run_id", String(64)),
    Column("last_successful_run_id", String(64)),
    Column("deprecated", Boolean, nullable=False, default=False),
)

skip_exceptions = Table(
    "skip_exceptions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("mission_definition_id", String(64), ForeignKey("mission_definitions.id"), nullable=False),
    Column("skip_date", Date, nullable=False),
    Column("time_of_day", Time, nullable=False),
    UniqueConstraint("mission_definition_id", "skip_date", "time_of_day", name="uq_skip_occurrence"),
)

# One row per dispatched occurrence; the unique constraint is the dispatch compare-and-swap
scheduled_dispatches = Table(
    "scheduled_dispatches",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("mission_definition_id", String(64), nullable=False),
    Column("occurrence", String(64), nullable=False),  # ISO-8601 instant
    Column("robot_id", String(64), nullable=False),
    Column("dispatched_at", DateTime(timezone=True)),
    UniqueConstraint("mission_definition_id", "occurrence", name="uq_dispatch_occurrence"),
)

mission_runs = Table(
    "mission_runs",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("external_mission_id", String(128), nullable=False, index=True),
    Column("name", String(256)),
    Column("mission_definition_id", String(64)),
    Column("robot_id", String(64)),
    Column("installation_code", String(64)),
    Column("area_id", String(64)),
    Column("status", String(32), nullable=False),
    Column("created_at", DateTime(timezone=True)),
    Column("started_at", DateTime(timezone=True)),
    Column("ended_at", DateTime(timezone=True)),
)

mission_tasks = Table(
    "mission_tasks",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("mission_run_id", String(64), ForeignKey("mission_runs.id"), nullable=False),
    Column("external_task_id", String(128), nullable=False, index=True),
    Column("task_order", Integer, nullable=False, default=0),
    Column("task_type", String(32), nullable=False),
    Column("status", String(32), nullable=False),
    Column("started_at", DateTime(timezone=True)),
    Column("ended_at", DateTime(timezone=True)),
)

inspections = Table(
    "inspections",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("mission_task_id", String(64), ForeignKey("mission_tasks.id"), nullable=False),
    Column("external_step_id", String(128), nullable=False, index=True),
    Column("step_type", String(64)),
    Column("status", String(32), nullable=False),
    Column("started_at", DateTime(timezone=True)),
    Column("ended_at", DateTime(timezone=True)),
)

task_durations = Table(
    "task_durations",
    metadata,
    Column("robot_model", String(128), primary_key=True),
    Column("average_seconds", Float, nullable=False),
    Column("sample_count", Integer, nullable=False),
    Column("updated_at", DateTime(timezone=True)),
)


def _to_asyncpg_url(url: str) -> str:
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


def create_engine(url: str, echo: bool = False) -> AsyncEngine:
    """Create the async engine; in-memory SQLite shares one connection."""
    url = _to_asyncpg_url(url)
    if url.startswith("sqlite") and (url.endswith("://") or ":memory:" in url):
        return create_async_engine(
            url,
            echo=echo,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    return create_async_engine(url, echo=echo)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


async def create_all(engine: AsyncEngine, drop_first: Optional[bool] = False) -> None:
    async with engine.begin() as conn:
        if drop_first:
            await conn.run_sync(metadata.drop_all)
        await conn.run_sync(metadata.create_all)
