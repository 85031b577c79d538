"""
Sync record persistence for epubsync.

Stores one row per (conversion_job_id, page_number, block_id) in the
`audio_syncs` table. Every mutating call runs in a single transaction;
database failures are rolled back and raised as StorageError.
"""

from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    delete,
    select,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from .models import EXCLUDED_NOTE, SyncRecord
from .utils import StorageError, SyncValidationError, fragment_sort_key, get_logger, page_number_from_id

logger = get_logger(__name__)


class Base(DeclarativeBase):
    pass


class AudioSyncRow(Base):
    __tablename__ = "audio_syncs"
    __table_args__ = (
        UniqueConstraint("conversion_job_id", "page_number", "block_id", name="uq_audio_sync_key"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    pdf_document_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    conversion_job_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    page_number: Mapped[int] = mapped_column(Integer, nullable=False)
    block_id: Mapped[str] = mapped_column(String(255), nullable=False)
    start_time: Mapped[float] = mapped_column(Float, nullable=False)
    end_time: Mapped[float] = mapped_column(Float, nullable=False)
    audio_file_path: Mapped[str] = mapped_column(String(1024), default="")
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    custom_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_custom_segment: Mapped[bool] = mapped_column(Boolean, default=False)
    should_read: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_record(self) -> SyncRecord:
        return SyncRecord(
            id=self.id,
            pdf_document_id=self.pdf_document_id,
            conversion_job_id=self.conversion_job_id,
            block_id=self.block_id,
            page_number=self.page_number,
            start_time=self.start_time,
            end_time=self.end_time,
            audio_file_path=self.audio_file_path,
            custom_text=self.custom_text,
            is_custom_segment=self.is_custom_segment,
            notes=self.notes,
            should_read=self.should_read,
        )

    def assign(self, record: SyncRecord):
        """Replace every stored field with the record's values."""
        self.pdf_document_id = record.pdf_document_id
        self.start_time = record.start_time
        self.end_time = record.end_time
        self.audio_file_path = record.audio_file_path or ""
        self.notes = record.notes
        self.custom_text = record.custom_text
        self.is_custom_segment = record.is_custom_segment
        self.should_read = record.should_read
        self.updated_at = datetime.utcnow()


class SyncStore:
    """
    SQLAlchemy-backed store for sync records.

    Args:
        database_url: SQLAlchemy URL (default: in-memory SQLite)
        echo: Log emitted SQL
    """

    def __init__(self, database_url: str = "sqlite://", echo: bool = False):
        self.database_url = database_url
        try:
            self.engine = create_engine(database_url, echo=echo)
            Base.metadata.create_all(self.engine)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to open sync store {database_url}: {e}")
        self._session_factory = sessionmaker(self.engine, expire_on_commit=False)
        logger.debug(f"SyncStore ready at {database_url}")

    def close(self):
        self.engine.dispose()

    def _session(self) -> Session:
        return self._session_factory()

    @staticmethod
    def _key_filter(job_id: int, page_number: int, block_id: str):
        return (
            AudioSyncRow.conversion_job_id == job_id,
            AudioSyncRow.page_number == page_number,
            AudioSyncRow.block_id == block_id,
        )

    def _write(self, session: Session, job_id: int, record: SyncRecord):
        row = session.scalars(
            select(AudioSyncRow).where(*self._key_filter(job_id, record.page_number, record.block_id))
        ).first()
        if row is None:
            row = AudioSyncRow(
                conversion_job_id=job_id,
                page_number=record.page_number,
                block_id=record.block_id,
            )
            session.add(row)
        row.assign(record)

    def upsert(self, job_id: int, records: Iterable[SyncRecord]) -> int:
        """
        Insert or fully replace records keyed by (job, page, block id).

        The batch is atomic: either every record is written or none is.

        Returns:
            Number of distinct keys written

        Raises:
            StorageError: If the transaction fails
        """
        batch: Dict[tuple, SyncRecord] = {}
        for record in records:
            batch[(record.page_number, record.block_id)] = record

        try:
            with self._session() as session, session.begin():
                for record in batch.values():
                    self._write(session, job_id, record)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to upsert {len(batch)} sync records for job {job_id}: {e}")

        logger.debug(f"Upserted {len(batch)} sync records for job {job_id}")
        return len(batch)

    def mark_excluded(
        self,
        job_id: int,
        fragment_ids: Iterable[str],
        page_numbers: Optional[Dict[str, int]] = None,
        pdf_document_id: Optional[int] = None,
        audio_file_path: str = "",
        texts: Optional[Dict[str, str]] = None,
        reason: str = "",
    ) -> int:
        """
        Persist zero-duration markers for fragments that must never be synced.

        Args:
            job_id: Conversion job id
            fragment_ids: Fragment ids to exclude
            page_numbers: Page per id (falls back to the id's page prefix, then 1)
            pdf_document_id: PDF document id stored on the markers
            audio_file_path: Audio path stored on the markers
            texts: Fragment text snapshots stored as custom_text
            reason: Appended to the [excluded] note

        Returns:
            Number of markers written
        """
        page_numbers = page_numbers or {}
        texts = texts or {}
        note = f"{EXCLUDED_NOTE} {reason}".strip()

        markers = [
            SyncRecord(
                pdf_document_id=pdf_document_id,
                conversion_job_id=job_id,
                block_id=fragment_id,
                page_number=page_numbers.get(fragment_id) or page_number_from_id(fragment_id, default=1),
                start_time=0.0,
                end_time=0.0,
                audio_file_path=audio_file_path,
                custom_text=texts.get(fragment_id),
                notes=note,
                should_read=False,
            )
            for fragment_id in fragment_ids
        ]
        if not markers:
            return 0

        count = self.upsert(job_id, markers)
        logger.info(f"Marked {count} fragments as excluded for job {job_id}")
        return count

    def excluded_ids(self, job_id: int) -> Set[str]:
        try:
            with self._session() as session:
                rows = session.scalars(
                    select(AudioSyncRow.block_id).where(
                        AudioSyncRow.conversion_job_id == job_id,
                        AudioSyncRow.should_read.is_(False),
                    )
                ).all()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to read exclusions for job {job_id}: {e}")
        return set(rows)

    def prune_stale(self, job_id: int, live_ids: Iterable[str]) -> int:
        """
        Delete records whose block id is no longer in the live fragment set.

        Returns:
            Number of deleted records
        """
        live = set(live_ids)
        try:
            with self._session() as session, session.begin():
                rows = session.scalars(
                    select(AudioSyncRow).where(AudioSyncRow.conversion_job_id == job_id)
                ).all()
                stale = [row for row in rows if row.block_id not in live]
                for row in stale:
                    session.delete(row)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to prune sync records for job {job_id}: {e}")

        if stale:
            logger.info(f"Pruned {len(stale)} stale sync records for job {job_id}")
        return len(stale)

    def list_by_job(self, job_id: int, include_excluded: bool = True) -> List[SyncRecord]:
        """Records of a job in page and document order."""
        query = select(AudioSyncRow).where(AudioSyncRow.conversion_job_id == job_id)
        if not include_excluded:
            query = query.where(AudioSyncRow.should_read.is_(True))

        try:
            with self._session() as session:
                records = [row.to_record() for row in session.scalars(query).all()]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list sync records for job {job_id}: {e}")

        records.sort(key=lambda r: (r.page_number, fragment_sort_key(r.block_id), r.start_time))
        return records

    def update_record(
        self,
        job_id: int,
        page_number: int,
        block_id: str,
        start_time: Optional[float] = None,
        end_time: Optional[float] = None,
        notes: Optional[str] = None,
        custom_text: Optional[str] = None,
    ) -> SyncRecord:
        """
        Apply a manual edit to one record.

        Raises:
            StorageError: If the record does not exist or the write fails
            SyncValidationError: If the edit leaves a spoken record with end <= start
        """
        try:
            with self._session() as session, session.begin():
                row = session.scalars(
                    select(AudioSyncRow).where(*self._key_filter(job_id, page_number, block_id))
                ).first()
                if row is None:
                    raise StorageError(f"No sync record for {block_id} on page {page_number} of job {job_id}")

                if start_time is not None:
                    row.start_time = start_time
                if end_time is not None:
                    row.end_time = end_time
                if notes is not None:
                    row.notes = notes
                if custom_text is not None:
                    row.custom_text = custom_text
                    row.is_custom_segment = True
                if row.should_read and row.end_time <= row.start_time:
                    raise SyncValidationError(
                        f"Edited range for {block_id} is empty: {row.start_time:.3f}-{row.end_time:.3f}"
                    )
                row.updated_at = datetime.utcnow()
                record = row.to_record()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to update {block_id} for job {job_id}: {e}")

        return record

    def delete_by_job(self, job_id: int) -> int:
        return self._delete(job_id, AudioSyncRow.conversion_job_id == job_id)

    def delete_page(self, job_id: int, page_number: int) -> int:
        return self._delete(
            job_id,
            AudioSyncRow.conversion_job_id == job_id,
            AudioSyncRow.page_number == page_number,
        )

    def _delete(self, job_id: int, *conditions) -> int:
        try:
            with self._session() as session, session.begin():
                result = session.execute(delete(AudioSyncRow).where(*conditions))
                count = result.rowcount
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to delete sync records for job {job_id}: {e}")

        logger.info(f"Deleted {count} sync records for job {job_id}")
        return count
