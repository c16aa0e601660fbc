from sqlalchemy import Boolean, Column, DateTime, Float, Index, Integer, JSON, String, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class IssueRow(Base):
    __tablename__ = "issues"

    id = Column(String(64), primary_key=True)
    file_path = Column(String(1024), nullable=False, index=True)
    type = Column(String(32), nullable=False)
    severity = Column(String(16), nullable=False)
    status = Column(String(32), nullable=False, index=True)
    detected_at = Column(DateTime(timezone=True), nullable=False)
    # Remaining Issue fields, minus status and fix
    payload = Column(JSON, nullable=False)


class FixRow(Base):
    __tablename__ = "fixes"

    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String(64), unique=True, nullable=False)
    issue_id = Column(String(64), nullable=False, index=True)
    active = Column(Boolean, nullable=False, default=True)
    status = Column(String(32), nullable=False)
    payload = Column(JSON, nullable=False)


class DecisionRow(Base):
    __tablename__ = "review_decisions"

    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String(64), unique=True, nullable=False)
    issue_id = Column(String(64), nullable=False, index=True)
    action = Column(String(32), nullable=False)
    from_status = Column(String(32), nullable=False)
    to_status = Column(String(32), nullable=False)
    actor = Column(String(128), nullable=False)
    notes = Column(Text, default="")
    timestamp = Column(DateTime(timezone=True), nullable=False)


class KnowledgeRow(Base):
    __tablename__ = "knowledge_entries"

    id = Column(String(64), primary_key=True)
    type = Column(String(16), nullable=False, index=True)
    source = Column(String(255), nullable=False)
    confidence = Column(Float, nullable=False)
    usage_count = Column(Integer, nullable=False, default=0)
    success_count = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), nullable=False)
    payload = Column(JSON, nullable=False)


class OutcomeRow(Base):
    __tablename__ = "calibration_outcomes"

    seq = Column(Integer, primary_key=True, autoincrement=True)
    fix_id = Column(String(64), nullable=False)
    method = Column(String(128), nullable=False)
    domain = Column(String(128), nullable=False)
    predicted = Column(Float, nullable=False)
    actual = Column(Boolean, nullable=False)
    recorded_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (Index("idx_outcomes_bucket", "method", "domain"),)
