"""SQLAlchemy table definitions for the stage and session store.

Uses SQLAlchemy Core (not ORM) for explicit control over the guarded
UPDATE statements that implement compare-and-set transitions.
"""

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    PrimaryKeyConstraint,
    String,
    Table,
    Text,
)

# Shared metadata for all tables
metadata = MetaData()

# === Reference data ===

narrative_templates_table = Table(
    "narrative_templates",
    metadata,
    Column("template_id", String(64), primary_key=True),
    Column("steps_json", Text, nullable=False),  # JSON array of step ids
    Column("registered_at", DateTime(timezone=True), nullable=False),
)

# === Sessions ===

sessions_table = Table(
    "sessions",
    metadata,
    Column("session_id", String(64), primary_key=True),
    Column("phase", String(16), nullable=False),
    Column("arc_step_index", Integer, nullable=False),
    Column("narrative_template_id", String(64), ForeignKey("narrative_templates.template_id"), nullable=False),
    Column("status", String(16), nullable=False),
    Column("selected_ending", Text),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    CheckConstraint("arc_step_index >= 0", name="ck_sessions_arc_step_index_non_negative"),
)

session_events_table = Table(
    "session_events",
    metadata,
    # Insertion order; timestamps can collide under a mock clock
    Column("seq", Integer, primary_key=True, autoincrement=True),
    Column("event_id", String(64), nullable=False, unique=True),
    Column("session_id", String(64), ForeignKey("sessions.session_id"), nullable=False),
    Column("event", String(64), nullable=False),
    Column("attributes_json", Text, nullable=False),
    Column("recorded_at", DateTime(timezone=True), nullable=False),
)

Index("ix_session_events_session", session_events_table.c.session_id, session_events_table.c.seq)

# === Artifacts and stages ===

artifacts_table = Table(
    "artifacts",
    metadata,
    Column("artifact_id", String(64), primary_key=True),
    Column("source_session_id", String(64), ForeignKey("sessions.session_id"), nullable=False),
    Column("pipeline_version", String(16), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

stage_records_table = Table(
    "stage_records",
    metadata,
    Column("artifact_id", String(64), ForeignKey("artifacts.artifact_id"), nullable=False),
    Column("stage", String(32), nullable=False),
    Column("status", String(16), nullable=False),
    Column("progress_completed", Integer, nullable=False, default=0),
    Column("progress_total", Integer, nullable=False, default=0),
    Column("retry_at", DateTime(timezone=True)),
    Column("last_error_message", Text),
    Column("attempt_count", Integer, nullable=False, default=0),
    Column("parameters_json", Text, nullable=False),
    Column("last_run_at", DateTime(timezone=True)),
    Column("last_completed_at", DateTime(timezone=True)),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    PrimaryKeyConstraint("artifact_id", "stage"),
    # rate_limited rows always carry their retry time
    CheckConstraint("status != 'rate_limited' OR retry_at IS NOT NULL", name="ck_stage_records_rate_limited_retry_at"),
    CheckConstraint("attempt_count >= 0", name="ck_stage_records_attempt_count_non_negative"),
)

Index("ix_stage_records_status_retry_at", stage_records_table.c.status, stage_records_table.c.retry_at)

stage_events_table = Table(
    "stage_events",
    metadata,
    # Insertion order; timestamps can collide under a mock clock
    Column("seq", Integer, primary_key=True, autoincrement=True),
    Column("event_id", String(64), nullable=False, unique=True),
    Column("artifact_id", String(64), ForeignKey("artifacts.artifact_id"), nullable=False),
    Column("stage", String(32), nullable=False),
    Column("from_status", String(16), nullable=False),
    Column("to_status", String(16), nullable=False),
    Column("attempt", Integer, nullable=False),
    Column("message", Text),
    Column("actor", String(64)),  # Set only for privileged resets
    Column("recorded_at", DateTime(timezone=True), nullable=False),
)

Index("ix_stage_events_artifact_stage", stage_events_table.c.artifact_id, stage_events_table.c.stage, stage_events_table.c.seq)
