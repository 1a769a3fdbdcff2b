"""
Record storage layer.

The API depends only on the RecordStore interface (create / get / update /
list, plus wrong-question derivation). Two implementations:

- InMemoryRecordStore: process-local dict, the default and the test fake.
- SqlRecordStore: async SQLAlchemy over the exam_papers table.
"""
import dataclasses
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..schemas.exam import RecordStatus, WrongQuestion
from .mistake_notebook import derive_wrong_questions

logger = logging.getLogger(__name__)


@dataclass
class ExamRecord:
    """Server-owned representation of one uploaded exam paper."""
    filename: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    file_path: Optional[str] = None
    image_url: Optional[str] = None
    mime_type: Optional[str] = None
    original_text: Optional[str] = None
    analysis_result: Optional[str] = None  # Serialized AnalysisResult JSON
    score: Optional[int] = None
    status: RecordStatus = RecordStatus.uploaded
    uploaded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    user_id: Optional[str] = None


UPDATABLE_FIELDS = {
    "file_path", "image_url", "mime_type", "original_text",
    "analysis_result", "score", "status",
}


class RecordStore(ABC):
    """Abstract persistence for exam records."""

    @abstractmethod
    async def create(self, record: ExamRecord) -> ExamRecord:
        pass

    @abstractmethod
    async def get(self, record_id: str) -> Optional[ExamRecord]:
        pass

    @abstractmethod
    async def update(self, record_id: str, **changes: Any) -> Optional[ExamRecord]:
        """Apply field changes; returns the updated record or None if missing."""
        pass

    @abstractmethod
    async def list(self) -> List[ExamRecord]:
        """All records, newest first."""
        pass

    async def get_wrong_questions(self, user_id: Optional[str] = None) -> List[WrongQuestion]:
        """Recompute the wrong-question view from completed records."""
        return derive_wrong_questions(await self.list(), user_id=user_id)

    async def close(self) -> None:
        pass

    @staticmethod
    def _check_fields(changes: Dict[str, Any]) -> None:
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fields: {sorted(unknown)}")


class InMemoryRecordStore(RecordStore):
    """Dict-backed store; returns copies so callers never alias stored state."""

    def __init__(self):
        self._records: Dict[str, ExamRecord] = {}

    async def create(self, record: ExamRecord) -> ExamRecord:
        self._records[record.id] = dataclasses.replace(record)
        logger.debug(f"Created record {record.id} ({record.filename})")
        return dataclasses.replace(record)

    async def get(self, record_id: str) -> Optional[ExamRecord]:
        record = self._records.get(record_id)
        return dataclasses.replace(record) if record else None

    async def update(self, record_id: str, **changes: Any) -> Optional[ExamRecord]:
        self._check_fields(changes)
        existing = self._records.get(record_id)
        if existing is None:
            return None
        updated = dataclasses.replace(existing, **changes)
        self._records[record_id] = updated
        return dataclasses.replace(updated)

    async def list(self) -> List[ExamRecord]:
        records = sorted(self._records.values(), key=lambda r: r.uploaded_at, reverse=True)
        return [dataclasses.replace(r) for r in records]


class SqlRecordStore(RecordStore):
    """Async SQLAlchemy store over the exam_papers table."""

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    @staticmethod
    def _to_record(row) -> ExamRecord:
        return ExamRecord(
            id=row.id,
            filename=row.filename,
            file_path=row.file_path,
            image_url=row.image_url,
            mime_type=row.mime_type,
            original_text=row.original_text,
            analysis_result=row.analysis_result,
            score=row.score,
            status=RecordStatus(row.status),
            uploaded_at=row.uploaded_at,
            user_id=row.user_id,
        )

    async def create(self, record: ExamRecord) -> ExamRecord:
        from ..models.exam_paper import ExamPaper

        row = ExamPaper(
            id=record.id,
            filename=record.filename,
            file_path=record.file_path,
            image_url=record.image_url,
            mime_type=record.mime_type,
            original_text=record.original_text,
            analysis_result=record.analysis_result,
            score=record.score,
            status=record.status.value,
            uploaded_at=record.uploaded_at,
            user_id=record.user_id,
        )
        async with self._session_factory() as db:
            db.add(row)
            await db.commit()
            await db.refresh(row)
            logger.info(f"Saved exam record with ID: {row.id}")
            return self._to_record(row)

    async def get(self, record_id: str) -> Optional[ExamRecord]:
        from ..models.exam_paper import ExamPaper

        async with self._session_factory() as db:
            result = await db.execute(select(ExamPaper).where(ExamPaper.id == record_id))
            row = result.scalar_one_or_none()
            return self._to_record(row) if row else None

    async def update(self, record_id: str, **changes: Any) -> Optional[ExamRecord]:
        from ..models.exam_paper import ExamPaper

        self._check_fields(changes)
        if "status" in changes and isinstance(changes["status"], RecordStatus):
            changes["status"] = changes["status"].value

        async with self._session_factory() as db:
            result = await db.execute(select(ExamPaper).where(ExamPaper.id == record_id))
            row = result.scalar_one_or_none()
            if row is None:
                return None
            for key, value in changes.items():
                setattr(row, key, value)
            await db.commit()
            await db.refresh(row)
            return self._to_record(row)

    async def list(self) -> List[ExamRecord]:
        from ..models.exam_paper import ExamPaper

        async with self._session_factory() as db:
            result = await db.execute(select(ExamPaper).order_by(ExamPaper.uploaded_at.desc()))
            return [self._to_record(row) for row in result.scalars().all()]
