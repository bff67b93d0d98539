from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Text, Uuid
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func
import uuid_utils
import uuid


def generate_uuid7():
    """Generate UUIDv7 and convert to standard Python UUID"""
    uuid7_obj = uuid_utils.uuid7()
    return uuid.UUID(str(uuid7_obj))

Base = declarative_base()


class IngestRun(Base):
    __tablename__ = 'ingest_runs'

    id = Column(Uuid(as_uuid=True), primary_key=True, default=generate_uuid7)
    mode = Column(String(32), nullable=False, index=True)
    status = Column(String(32), nullable=False, default="running", index=True)
    watermark_before = Column(Integer, nullable=False)
    watermark_after = Column(Integer)
    candidates = Column(Integer, nullable=False, default=0)
    attempted = Column(Integer, nullable=False, default=0)
    rendered = Column(Integer, nullable=False, default=0)
    skipped = Column(Integer, nullable=False, default=0)
    caught_up = Column(Boolean, nullable=False, default=False)
    error = Column(Text)
    started_at = Column(DateTime(timezone=True), default=func.now(), nullable=False)
    finished_at = Column(DateTime(timezone=True))

    # Relationships
    outcomes = relationship(
        "ItemOutcome",
        back_populates="run",
        cascade="all, delete-orphan",
        order_by="ItemOutcome.identifier"
    )

    def __repr__(self):
        return (
            f"<IngestRun(id={self.id}, mode='{self.mode}', status='{self.status}', "
            f"watermark={self.watermark_before}->{self.watermark_after})>"
        )


class ItemOutcome(Base):
    __tablename__ = 'item_outcomes'

    id = Column(Uuid(as_uuid=True), primary_key=True, default=generate_uuid7)
    run_id = Column(Uuid(as_uuid=True), ForeignKey('ingest_runs.id', ondelete='CASCADE'), nullable=False)
    identifier = Column(Integer, nullable=False, index=True)
    origin = Column(String(32), nullable=False)
    url = Column(String(2000), nullable=False)
    status = Column(String(32), nullable=False, index=True)
    reason = Column(String(64), index=True)
    detail = Column(Text)
    strategy = Column(String(100))
    artifact_name = Column(String(255))
    artifact_size = Column(Integer)
    checksum = Column(String(64))
    created_at = Column(DateTime(timezone=True), default=func.now(), nullable=False)

    # Relationship
    run = relationship("IngestRun", back_populates="outcomes")

    # Composite index for retry lookups
    __table_args__ = (
        Index('ix_item_outcomes_identifier_reason', 'identifier', 'reason'),
    )

    def __repr__(self):
        return f"<ItemOutcome(identifier={self.identifier}, status='{self.status}', reason='{self.reason}')>"
