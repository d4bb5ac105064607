"""
Render Job Ledger

One row per job id recording the outcome of the latest attempt. A job id
whose row is already complete short-circuits re-submission (unless the
request forces a re-render), complementing the manifest-level render cache.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import BigInteger, Boolean, Column, DateTime, Float, String, Text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from ..db import Base, session_scope
from ..schemas.render import RenderRequest, RenderResult
from .errors import RenderError

logger = logging.getLogger(__name__)

STATUS_RUNNING = "running"
STATUS_COMPLETE = "complete"
STATUS_FAILED = "failed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RenderJobRecord(Base):
    """Ledger row for one render job id."""

    __tablename__ = "render_jobs"

    job_id = Column(String(200), primary_key=True)
    project_id = Column(String(128), nullable=False, index=True)
    status = Column(String(20), nullable=False, default=STATUS_RUNNING)
    attempts = Column(BigInteger, nullable=False, default=0)
    manifest_hash = Column(String(64), nullable=True)
    cached = Column(Boolean, nullable=False, default=False)
    output_path = Column(String(500), nullable=True)
    file_size = Column(BigInteger, nullable=True)
    duration_seconds = Column(Float, nullable=True)
    result_json = Column(Text, nullable=True)
    error_code = Column(String(50), nullable=True)
    error_message = Column(Text, nullable=True)
    retryable = Column(Boolean, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    completed_at = Column(DateTime(timezone=True), nullable=True)


class JobLedger:
    """
    Repository over the render_jobs table.

    Usage:
        ledger = JobLedger(session_factory)
        previous = ledger.completed_result(job_id)
        ledger.start(request)
        ledger.complete(job_id, result)
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    @classmethod
    def from_engine(cls, engine: Engine) -> "JobLedger":
        Base.metadata.create_all(engine)
        return cls(sessionmaker(bind=engine, autoflush=False, expire_on_commit=False))

    def get(self, job_id: str) -> Optional[RenderJobRecord]:
        with session_scope(self.session_factory) as db:
            return db.get(RenderJobRecord, job_id)

    def completed_result(self, job_id: str) -> Optional[RenderResult]:
        """Recorded result of a completed job id, if any."""
        record = self.get(job_id)
        if record is None or record.status != STATUS_COMPLETE or not record.result_json:
            return None
        return RenderResult.model_validate_json(record.result_json)

    def start(self, request: RenderRequest) -> None:
        """Create or reset the row for a new attempt."""
        with session_scope(self.session_factory) as db:
            record = db.get(RenderJobRecord, request.job_id)
            if record is None:
                record = RenderJobRecord(
                    job_id=request.job_id,
                    project_id=request.project_id,
                    attempts=0,
                )
                db.add(record)
            record.status = STATUS_RUNNING
            record.attempts = (record.attempts or 0) + 1
            record.error_code = None
            record.error_message = None
            record.retryable = None
            record.completed_at = None
            db.commit()

    def complete(self, job_id: str, result: RenderResult) -> None:
        with session_scope(self.session_factory) as db:
            record = db.get(RenderJobRecord, job_id)
            if record is None:
                logger.warning(f"Ledger row missing for completed job {job_id}")
                return
            record.status = STATUS_COMPLETE
            record.manifest_hash = result.manifest_hash
            record.cached = result.cached
            record.output_path = result.artifact_ref
            record.file_size = result.file_size
            record.duration_seconds = result.duration_seconds
            record.result_json = result.model_dump_json()
            record.completed_at = _utcnow()
            db.commit()

    def fail(self, job_id: str, error: RenderError) -> None:
        with session_scope(self.session_factory) as db:
            record = db.get(RenderJobRecord, job_id)
            if record is None:
                logger.warning(f"Ledger row missing for failed job {job_id}")
                return
            record.status = STATUS_FAILED
            record.error_code = error.code
            record.error_message = error.message[:2000]
            record.retryable = error.retryable
            record.completed_at = _utcnow()
            db.commit()
