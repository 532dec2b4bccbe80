from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


class Company(Base):
    __tablename__ = "companies"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(300), default="")
    batch: Mapped[str] = mapped_column(String(50), default="")
    snapshot_json: Mapped[str] = mapped_column(Text, default="{}")  # last scored CompanyData
    spearfish_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    normalized_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    current_score_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    score_algorithm_version: Mapped[str | None] = mapped_column(String(20), nullable=True)
    score_updated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    scores: Mapped[list[ScoreHistory]] = relationship("ScoreHistory", back_populates="company", cascade="all, delete-orphan")


class ScoreHistory(Base):
    """Append-only; rows are never updated after insert."""
    __tablename__ = "score_history"
    __table_args__ = (UniqueConstraint("company_id", "calculated_at", name="uq_score_history_company_time"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_id: Mapped[str] = mapped_column(String(64), ForeignKey("companies.id"), nullable=False, index=True)
    total_score: Mapped[float] = mapped_column(Float, nullable=False)
    normalized_score: Mapped[int] = mapped_column(Integer, nullable=False)
    breakdown_json: Mapped[str] = mapped_column(Text, default="{}")
    weights_json: Mapped[str] = mapped_column(Text, default="{}")
    confidence: Mapped[float] = mapped_column(Float, default=1.0)
    algorithm_version: Mapped[str] = mapped_column(String(20), nullable=False)
    metadata_json: Mapped[str] = mapped_column(Text, default="{}")
    batch_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    calculated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    company: Mapped[Company] = relationship("Company", back_populates="scores")


class ScoreBatchLog(Base):
    __tablename__ = "score_batch_logs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    algorithm_version: Mapped[str] = mapped_column(String(20), nullable=False)
    total: Mapped[int] = mapped_column(Integer, default=0)
    successful: Mapped[int] = mapped_column(Integer, default=0)
    failed: Mapped[int] = mapped_column(Integer, default=0)
    errors_json: Mapped[str] = mapped_column(Text, default="[]")
    started_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class ResearchSessionRecord(Base):
    __tablename__ = "research_sessions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    company_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    owner_id: Mapped[str] = mapped_column(String(128), nullable=False)
    research_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    template_ids_json: Mapped[str] = mapped_column(Text, default="[]")
    status: Mapped[str] = mapped_column(String(20), nullable=False)  # pending | processing | completed | failed | cancelled
    started_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    total_cost: Mapped[float] = mapped_column(Float, default=0.0)
    tokens_used: Mapped[int] = mapped_column(Integer, default=0)
    completed_query_count: Mapped[int] = mapped_column(Integer, default=0)
    total_query_count: Mapped[int] = mapped_column(Integer, default=0)
    failed_query_count: Mapped[int] = mapped_column(Integer, default=0)
    skipped_query_count: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_kind: Mapped[str | None] = mapped_column(String(30), nullable=True)
    config_json: Mapped[str] = mapped_column(Text, default="{}")
    query_statuses_json: Mapped[str] = mapped_column(Text, default="{}")
    metadata_json: Mapped[str] = mapped_column(Text, default="{}")
    summary_json: Mapped[str | None] = mapped_column(Text, nullable=True)

    findings: Mapped[list[ResearchFindingRecord]] = relationship(
        "ResearchFindingRecord", back_populates="session", cascade="all, delete-orphan",
    )


class ResearchFindingRecord(Base):
    __tablename__ = "research_findings"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    session_id: Mapped[str] = mapped_column(String(64), ForeignKey("research_sessions.id"), nullable=False, index=True)
    finding_type: Mapped[str] = mapped_column(String(50), nullable=False)
    category: Mapped[str] = mapped_column(String(30), default="")
    title: Mapped[str] = mapped_column(String(300), default="")
    content: Mapped[str] = mapped_column(Text, default="")
    confidence_score: Mapped[float] = mapped_column(Float, default=0.5)
    citations_json: Mapped[str] = mapped_column(Text, default="[]")
    priority_level: Mapped[str] = mapped_column(String(20), default="medium")
    tags_json: Mapped[str] = mapped_column(Text, default="[]")
    source_template_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    rank: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    session: Mapped[ResearchSessionRecord] = relationship("ResearchSessionRecord", back_populates="findings")
