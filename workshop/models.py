from datetime import datetime, timezone

from sqlalchemy import (
    Column, Integer, String, Text, DateTime, Index, JSON, LargeBinary
)
from sqlalchemy.types import TypeDecorator

from .database import Base


class UTCDateTime(TypeDecorator):
    """Stores UTC, always hands back timezone-aware values (SQLite drops tzinfo)."""
    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------
# PROJECTS
# ---------------------------
class ProjectRow(Base):
    __tablename__ = "projects"

    id = Column(String(64), primary_key=True)
    name = Column(String, nullable=False)
    created_at = Column(UTCDateTime(), nullable=False)
    updated_at = Column(UTCDateTime(), nullable=False, index=True)
    last_opened_at = Column(UTCDateTime(), nullable=False, index=True)
    default_model = Column(String, nullable=True)
    default_aspect_ratio = Column(String(8), nullable=False)
    default_resolution = Column(String(8), nullable=False)


# ---------------------------
# TIMELINE STEPS
# ---------------------------
# One table, discriminated on ``type``. Asset references are plain strings:
# a step may outlive the assets it points at.
class StepRow(Base):
    __tablename__ = "steps"

    id = Column(String(64), primary_key=True)
    project_id = Column(String(64), nullable=False, index=True)
    type = Column(String(16), nullable=False)
    created_at = Column(UTCDateTime(), nullable=False, index=True)

    __table_args__ = (
        Index("ix_steps_project_id_created_at", "project_id", "created_at"),
    )
    __mapper_args__ = {"polymorphic_on": type}


class GenerationStepRow(StepRow):
    input = Column(JSON, nullable=True)
    outputs = Column(JSON, nullable=True)
    remix_of_step_id = Column(String(64), nullable=True)
    remix_of_asset_id = Column(String(64), nullable=True)
    status = Column(String(16), nullable=True)  # pending|completed|failed
    error = Column(Text, nullable=True)
    trace = Column(JSON, nullable=True)

    __mapper_args__ = {"polymorphic_identity": "generation", "polymorphic_load": "inline"}


class EditStepRow(StepRow):
    source_asset_id = Column(String(64), nullable=True)
    output_asset_id = Column(String(64), nullable=True)
    operations = Column(JSON, nullable=True)

    __mapper_args__ = {"polymorphic_identity": "edit", "polymorphic_load": "inline"}


# ---------------------------
# ASSETS
# ---------------------------
class AssetRow(Base):
    __tablename__ = "assets"

    id = Column(String(64), primary_key=True)
    scope = Column(String(16), nullable=False)          # project|global
    project_id = Column(String(64), nullable=True, index=True)  # NULL for global
    kind = Column(String(16), nullable=False, index=True)
    created_at = Column(UTCDateTime(), nullable=False, index=True)
    mime_type = Column(String, nullable=False)
    width = Column(Integer, nullable=False)
    height = Column(Integer, nullable=False)
    source_url = Column(String, nullable=True)
    size_bytes = Column(Integer, nullable=False, default=0)
    content = Column(LargeBinary, nullable=False)

    __table_args__ = (
        Index("ix_assets_scope_project_id", "scope", "project_id"),
    )


# ---------------------------
# PERSONAS
# ---------------------------
class PersonaRow(Base):
    __tablename__ = "personas"

    id = Column(String(64), primary_key=True)
    name = Column(String, nullable=False)
    reference_asset_ids = Column(JSON, nullable=False, default=list)
    created_at = Column(UTCDateTime(), nullable=False)
    updated_at = Column(UTCDateTime(), nullable=False, index=True)


# ---------------------------
# META
# ---------------------------
class MetaEntry(Base):
    __tablename__ = "meta"

    key = Column(String(64), primary_key=True)
    value = Column(Integer, nullable=False)
