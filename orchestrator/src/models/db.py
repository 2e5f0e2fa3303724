"""
Database models for the orchestrator (sync version).
"""

from sqlalchemy import Column, String, DateTime, ForeignKey, Integer, Text, Boolean
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func
import uuid

Base = declarative_base()

class PipelineRun(Base):
    __tablename__ = "pipeline_runs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    repository_id = Column(UUID(as_uuid=True))
    commit_sha = Column(String(40), nullable=False)
    branch = Column(String(255), nullable=False)
    trigger_event = Column(String(50), nullable=False)
    status = Column(String(50), default="pending")
    triggered_by = Column(String(255))
    image_tag = Column(String(255))
    promote_from = Column(String(50))
    promote_to = Column(String(50))
    config = Column(JSONB)
    error = Column(Text)
    error_kind = Column(String(50))
    started_at = Column(DateTime)
    finished_at = Column(DateTime)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

class PipelineStage(Base):
    __tablename__ = "pipeline_stages"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    run_id = Column(UUID(as_uuid=True), ForeignKey("pipeline_runs.id"))
    name = Column(String(255), nullable=False)
    stage_order = Column(Integer, nullable=False)
    needs = Column(JSONB, default=list)
    status = Column(String(50), default="pending")
    outputs = Column(JSONB)
    artifacts = Column(JSONB)
    logs = Column(Text)
    error = Column(Text)
    error_kind = Column(String(50))
    bypassed = Column(Boolean, default=False)
    started_at = Column(DateTime)
    finished_at = Column(DateTime)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

class Promotion(Base):
    __tablename__ = "promotions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    run_id = Column(UUID(as_uuid=True), ForeignKey("pipeline_runs.id"))
    environment = Column(String(50), nullable=False)
    image_reference = Column(String(500), nullable=False)
    manifest_path = Column(String(500), nullable=False)
    status = Column(String(50), default="pending")
    requested_by = Column(String(255))
    approver = Column(String(255))
    revision = Column(String(255))
    committed_at = Column(DateTime)
    created_at = Column(DateTime, server_default=func.now())
