from sqlalchemy import Column, String, DateTime, ForeignKey, Integer, Text, Boolean
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from api.src.db.database import Base

class Repository(Base):
    __tablename__ = "repositories"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    full_name = Column(String(255), nullable=False, unique=True)
    clone_url = Column(String(500), nullable=False)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    runs = relationship("PipelineRun", back_populates="repository")

class PipelineRun(Base):
    __tablename__ = "pipeline_runs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    repository_id = Column(UUID(as_uuid=True), ForeignKey("repositories.id", ondelete="CASCADE"))
    commit_sha = Column(String(40), nullable=False)
    branch = Column(String(255), nullable=False)
    trigger_event = Column(String(50), nullable=False)
    status = Column(String(50), default="pending")
    triggered_by = Column(String(255))
    # Manual dispatch inputs
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

    repository = relationship("Repository", back_populates="runs")
    stages = relationship("PipelineStage", back_populates="run")
    promotions = relationship("Promotion", back_populates="run")

class PipelineStage(Base):
    __tablename__ = "pipeline_stages"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    run_id = Column(UUID(as_uuid=True), ForeignKey("pipeline_runs.id", ondelete="CASCADE"))
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

    run = relationship("PipelineRun", back_populates="stages")

class Promotion(Base):
    __tablename__ = "promotions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    run_id = Column(UUID(as_uuid=True), ForeignKey("pipeline_runs.id", ondelete="CASCADE"))
    environment = Column(String(50), nullable=False)
    image_reference = Column(String(500), nullable=False)
    manifest_path = Column(String(500), nullable=False)
    status = Column(String(50), default="pending")
    requested_by = Column(String(255))
    approver = Column(String(255))
    revision = Column(String(255))
    committed_at = Column(DateTime)
    created_at = Column(DateTime, server_default=func.now())

    run = relationship("PipelineRun", back_populates="promotions")
