from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import Column, String, Integer, DateTime, Boolean, JSON, delete, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.future import select

from backup_scheduler.domain.job import Job, JobCollection, JobProgress, JobStatus, JobType
from backup_scheduler.domain.schedule import Frequency, Schedule
from backup_scheduler.domain.manifest import ManifestEntry
from backup_scheduler.domain.lock import CancelMarker, LockRecord
from backup_scheduler.errors import DuplicateID, NotFound
from backup_scheduler.storages.protocol import Storage

Base = declarative_base()

LOCK_NAME = "queue"


class RecordIdModel(Base):
    """
    Every job and schedule id ever issued. Rows are never deleted, so an id
    cannot be reused, and ``seq`` gives a stable insertion order.
    """
    __tablename__ = 'record_ids'

    seq = Column(Integer, primary_key=True, autoincrement=True)
    record_id = Column(String, unique=True, nullable=False)
    kind = Column(String, nullable=False)
    issued_at = Column(DateTime(timezone=True), nullable=False)


class JobModel(Base):
    __tablename__ = 'jobs'

    id = Column(String, primary_key=True)
    seq = Column(Integer, nullable=False, index=True)
    collection = Column(String, nullable=False, index=True)
    type = Column(String, nullable=False)
    status = Column(String, nullable=False)
    accounts = Column(JSON, nullable=False)
    destination_id = Column(String, nullable=False)
    owner = Column(String, nullable=False)
    schedule_id = Column(String, nullable=False, index=True)
    retention = Column(Integer, nullable=False)
    accounts_total = Column(Integer, nullable=False, default=0)
    accounts_completed = Column(Integer, nullable=False, default=0)
    options = Column(JSON)
    results = Column(JSON)
    errors = Column(JSON)
    message = Column(String)
    error = Column(String)
    created_at = Column(DateTime(timezone=True), nullable=False)
    started_at = Column(DateTime(timezone=True))
    finished_at = Column(DateTime(timezone=True))


class ScheduleModel(Base):
    __tablename__ = 'schedules'

    id = Column(String, primary_key=True)
    seq = Column(Integer, nullable=False, index=True)
    owner = Column(String, nullable=False)
    accounts = Column(JSON, nullable=False)
    destination_id = Column(String, nullable=False)
    frequency = Column(String, nullable=False)
    preferred_hour = Column(Integer, nullable=False)
    day_of_week = Column(Integer, nullable=False)
    retention = Column(Integer, nullable=False)
    enabled = Column(Boolean, default=True)
    next_run = Column(DateTime(timezone=True))
    last_run = Column(DateTime(timezone=True))
    last_status = Column(String)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True))


class ManifestEntryModel(Base):
    __tablename__ = 'manifest_entries'

    seq = Column(Integer, primary_key=True, autoincrement=True)
    destination_id = Column(String, nullable=False, index=True)
    schedule_id = Column(String, nullable=False, index=True)
    account = Column(String, nullable=False)
    filename = Column(String, nullable=False)
    companion_filename = Column(String)
    size = Column(Integer, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False)


class CancelMarkerModel(Base):
    __tablename__ = 'cancel_markers'

    job_id = Column(String, primary_key=True)
    requested_by = Column(String, nullable=False)
    requested_at = Column(DateTime(timezone=True), nullable=False)
    reason = Column(String)


class ProcessorLockModel(Base):
    __tablename__ = 'processor_lock'

    name = Column(String, primary_key=True, default=LOCK_NAME)
    token = Column(String, nullable=False)
    holder_pid = Column(Integer)
    acquired_at = Column(DateTime(timezone=True), nullable=False)
    heartbeat_at = Column(DateTime(timezone=True), nullable=False)


def _to_db(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc)


def _from_db(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops the offset; everything is written as UTC.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class SqlAlchemyStorage(Storage):
    def __init__(self, db_url: str):
        self.engine = create_async_engine(db_url)
        self.async_session = sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def create_tables(self):
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self):
        await self.engine.dispose()

    async def _issue_id(self, session: AsyncSession, record_id: str, kind: str) -> int:
        registry = RecordIdModel(record_id=record_id, kind=kind, issued_at=datetime.now(timezone.utc))
        session.add(registry)
        try:
            await session.flush()
        except IntegrityError:
            await session.rollback()
            raise DuplicateID(f"ID '{record_id}' has already been issued") from None
        return registry.seq

    # Jobs

    async def create_job(self, job: Job, collection: JobCollection = JobCollection.QUEUE) -> str:
        async with self.async_session() as session:
            seq = await self._issue_id(session, job.id, "job")
            db_job = JobModel(seq=seq, collection=collection.value, **self._job_values(job))
            session.add(db_job)
            await session.commit()
            return job.id

    async def get_job(self, job_id: str) -> Optional[Job]:
        async with self.async_session() as session:
            result = await session.execute(select(JobModel).filter_by(id=job_id))
            db_job = result.scalar_one_or_none()
            if db_job:
                return self._db_to_job(db_job)
            return None

    async def job_collection(self, job_id: str) -> Optional[JobCollection]:
        async with self.async_session() as session:
            result = await session.execute(select(JobModel.collection).filter_by(id=job_id))
            collection = result.scalar_one_or_none()
            return JobCollection(collection) if collection else None

    async def list_collection(self, collection: JobCollection) -> List[Job]:
        async with self.async_session() as session:
            result = await session.execute(
                select(JobModel)
                .filter_by(collection=JobCollection(collection).value)
                .order_by(JobModel.seq.asc())
            )
            return [self._db_to_job(db_job) for db_job in result.scalars()]

    async def update_job(self, job_id: str, fields: Dict[str, Any], collection: Optional[JobCollection] = None) -> Job:
        async with self.async_session() as session:
            db_job = await self._load_job_row(session, job_id, collection)
            job = self._merge_job(self._db_to_job(db_job), fields)
            self._apply_job(db_job, job)
            await session.commit()
            return job

    async def move_job(self, job_id: str, source: JobCollection, target: JobCollection,
                       fields: Optional[Dict[str, Any]] = None) -> Job:
        # Collection and merged fields change in one row update, inside one
        # transaction: the job is visible in exactly one collection throughout.
        async with self.async_session() as session:
            db_job = await self._load_job_row(session, job_id, source)
            job = self._merge_job(self._db_to_job(db_job), fields or {})
            self._apply_job(db_job, job)
            db_job.collection = JobCollection(target).value
            await session.commit()
            return job

    async def delete_job(self, job_id: str, collection: Optional[JobCollection] = None) -> bool:
        async with self.async_session() as session:
            statement = delete(JobModel).where(JobModel.id == job_id)
            if collection is not None:
                statement = statement.where(JobModel.collection == JobCollection(collection).value)
            result = await session.execute(statement)
            await session.commit()
            return result.rowcount > 0

    async def _load_job_row(self, session: AsyncSession, job_id: str,
                            collection: Optional[JobCollection]) -> JobModel:
        query = select(JobModel).filter_by(id=job_id)
        if collection is not None:
            query = query.filter_by(collection=JobCollection(collection).value)
        result = await session.execute(query)
        db_job = result.scalar_one_or_none()
        if db_job is None:
            where = f" in '{JobCollection(collection).value}'" if collection is not None else ""
            raise NotFound(f"Job '{job_id}' not found{where}")
        return db_job

    # Schedules

    async def create_schedule(self, schedule: Schedule) -> str:
        async with self.async_session() as session:
            seq = await self._issue_id(session, schedule.id, "schedule")
            session.add(ScheduleModel(seq=seq, **self._schedule_values(schedule)))
            await session.commit()
            return schedule.id

    async def get_schedule(self, schedule_id: str) -> Optional[Schedule]:
        async with self.async_session() as session:
            result = await session.execute(select(ScheduleModel).filter_by(id=schedule_id))
            db_schedule = result.scalar_one_or_none()
            if db_schedule:
                return self._db_to_schedule(db_schedule)
            return None

    async def list_schedules(self) -> List[Schedule]:
        async with self.async_session() as session:
            result = await session.execute(select(ScheduleModel).order_by(ScheduleModel.seq.asc()))
            return [self._db_to_schedule(db_schedule) for db_schedule in result.scalars()]

    async def update_schedule(self, schedule_id: str, fields: Dict[str, Any]) -> Schedule:
        async with self.async_session() as session:
            result = await session.execute(select(ScheduleModel).filter_by(id=schedule_id))
            db_schedule = result.scalar_one_or_none()
            if db_schedule is None:
                raise NotFound(f"Schedule '{schedule_id}' not found")
            current = self._db_to_schedule(db_schedule)
            schedule = Schedule.model_validate({**current.model_dump(), **fields})
            for key, value in self._schedule_values(schedule).items():
                if key != "id":
                    setattr(db_schedule, key, value)
            await session.commit()
            return schedule

    async def delete_schedule(self, schedule_id: str) -> bool:
        async with self.async_session() as session:
            result = await session.execute(delete(ScheduleModel).where(ScheduleModel.id == schedule_id))
            await session.commit()
            return result.rowcount > 0

    # Manifest

    async def append_manifest_entry(self, entry: ManifestEntry) -> ManifestEntry:
        async with self.async_session() as session:
            db_entry = ManifestEntryModel(
                destination_id=entry.destination_id,
                schedule_id=entry.schedule_id,
                account=entry.account,
                filename=entry.filename,
                companion_filename=entry.companion_filename,
                size=entry.size,
                created_at=_to_db(entry.created_at),
            )
            session.add(db_entry)
            await session.commit()
            return entry.model_copy(update={"seq": db_entry.seq})

    async def list_manifest_entries(self, destination_id: str, schedule_id: str,
                                    account: Optional[str] = None) -> List[ManifestEntry]:
        async with self.async_session() as session:
            query = select(ManifestEntryModel).filter_by(destination_id=destination_id, schedule_id=schedule_id)
            if account is not None:
                query = query.filter_by(account=account)
            result = await session.execute(
                query.order_by(ManifestEntryModel.created_at.asc(), ManifestEntryModel.seq.asc())
            )
            return [self._db_to_manifest_entry(db_entry) for db_entry in result.scalars()]

    async def delete_manifest_entries(self, destination_id: str, schedule_id: str, filenames: List[str],
                                      account: Optional[str] = None) -> int:
        if not filenames:
            return 0
        async with self.async_session() as session:
            statement = delete(ManifestEntryModel).where(
                ManifestEntryModel.destination_id == destination_id,
                ManifestEntryModel.schedule_id == schedule_id,
                ManifestEntryModel.filename.in_(filenames),
            )
            if account is not None:
                statement = statement.where(ManifestEntryModel.account == account)
            result = await session.execute(statement)
            await session.commit()
            return result.rowcount

    # Cancel markers

    async def create_cancel_marker(self, marker: CancelMarker) -> None:
        async with self.async_session() as session:
            await session.merge(CancelMarkerModel(
                job_id=marker.job_id,
                requested_by=marker.requested_by,
                requested_at=_to_db(marker.requested_at),
                reason=marker.reason,
            ))
            await session.commit()

    async def get_cancel_marker(self, job_id: str) -> Optional[CancelMarker]:
        async with self.async_session() as session:
            result = await session.execute(select(CancelMarkerModel).filter_by(job_id=job_id))
            db_marker = result.scalar_one_or_none()
            if db_marker is None:
                return None
            return CancelMarker(
                job_id=db_marker.job_id,
                requested_by=db_marker.requested_by,
                requested_at=_from_db(db_marker.requested_at),
                reason=db_marker.reason,
            )

    async def delete_cancel_marker(self, job_id: str) -> bool:
        async with self.async_session() as session:
            result = await session.execute(delete(CancelMarkerModel).where(CancelMarkerModel.job_id == job_id))
            await session.commit()
            return result.rowcount > 0

    # Lock

    async def get_lock(self) -> Optional[LockRecord]:
        async with self.async_session() as session:
            result = await session.execute(select(ProcessorLockModel).filter_by(name=LOCK_NAME))
            db_lock = result.scalar_one_or_none()
            if db_lock is None:
                return None
            return LockRecord(
                token=db_lock.token,
                holder_pid=db_lock.holder_pid,
                acquired_at=_from_db(db_lock.acquired_at),
                heartbeat_at=_from_db(db_lock.heartbeat_at),
            )

    async def insert_lock(self, lock: LockRecord) -> bool:
        async with self.async_session() as session:
            session.add(ProcessorLockModel(
                name=LOCK_NAME,
                token=lock.token,
                holder_pid=lock.holder_pid,
                acquired_at=_to_db(lock.acquired_at),
                heartbeat_at=_to_db(lock.heartbeat_at),
            ))
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return False
            return True

    async def delete_lock(self, token: str) -> bool:
        async with self.async_session() as session:
            result = await session.execute(delete(ProcessorLockModel).where(ProcessorLockModel.token == token))
            await session.commit()
            return result.rowcount > 0

    async def touch_lock(self, token: str, at: datetime) -> bool:
        async with self.async_session() as session:
            result = await session.execute(
                update(ProcessorLockModel)
                .where(ProcessorLockModel.token == token)
                .values(heartbeat_at=_to_db(at))
            )
            await session.commit()
            return result.rowcount > 0

    # Row conversion

    def _job_values(self, job: Job) -> Dict[str, Any]:
        dumped = job.model_dump(mode="json")
        return dict(
            id=job.id,
            type=job.type.value,
            status=job.status.value,
            accounts=dumped["accounts"],
            destination_id=job.destination_id,
            owner=job.owner,
            schedule_id=job.schedule_id,
            retention=job.retention,
            accounts_total=job.progress.accounts_total,
            accounts_completed=job.progress.accounts_completed,
            options=dumped["options"],
            results=dumped["results"],
            errors=dumped["errors"],
            message=job.message,
            error=job.error,
            created_at=_to_db(job.created_at),
            started_at=_to_db(job.started_at),
            finished_at=_to_db(job.finished_at),
        )

    def _apply_job(self, db_job: JobModel, job: Job) -> None:
        for key, value in self._job_values(job).items():
            if key != "id":
                setattr(db_job, key, value)

    def _merge_job(self, job: Job, fields: Dict[str, Any]) -> Job:
        if "id" in fields and fields["id"] != job.id:
            raise ValueError("A job id cannot be changed")
        return Job.model_validate({**job.model_dump(), **fields})

    def _db_to_job(self, db_job: JobModel) -> Job:
        return Job(
            id=db_job.id,
            type=JobType(db_job.type),
            status=JobStatus(db_job.status),
            accounts=db_job.accounts,
            destination_id=db_job.destination_id,
            owner=db_job.owner,
            schedule_id=db_job.schedule_id,
            retention=db_job.retention,
            progress=JobProgress(
                accounts_total=db_job.accounts_total or 0,
                accounts_completed=db_job.accounts_completed or 0,
            ),
            options=db_job.options or {},
            results=db_job.results or {},
            errors=db_job.errors or [],
            message=db_job.message,
            error=db_job.error,
            created_at=_from_db(db_job.created_at),
            started_at=_from_db(db_job.started_at),
            finished_at=_from_db(db_job.finished_at),
        )

    def _schedule_values(self, schedule: Schedule) -> Dict[str, Any]:
        return dict(
            id=schedule.id,
            owner=schedule.owner,
            accounts=schedule.accounts.model_dump(mode="json"),
            destination_id=schedule.destination_id,
            frequency=schedule.frequency.value,
            preferred_hour=schedule.preferred_hour,
            day_of_week=schedule.day_of_week,
            retention=schedule.retention,
            enabled=schedule.enabled,
            next_run=_to_db(schedule.next_run),
            last_run=_to_db(schedule.last_run),
            last_status=schedule.last_status,
            created_at=_to_db(schedule.created_at),
            updated_at=_to_db(schedule.updated_at),
        )

    def _db_to_schedule(self, db_schedule: ScheduleModel) -> Schedule:
        return Schedule(
            id=db_schedule.id,
            owner=db_schedule.owner,
            accounts=db_schedule.accounts,
            destination_id=db_schedule.destination_id,
            frequency=Frequency(db_schedule.frequency),
            preferred_hour=db_schedule.preferred_hour,
            day_of_week=db_schedule.day_of_week,
            retention=db_schedule.retention,
            enabled=db_schedule.enabled,
            next_run=_from_db(db_schedule.next_run),
            last_run=_from_db(db_schedule.last_run),
            last_status=db_schedule.last_status,
            created_at=_from_db(db_schedule.created_at),
            updated_at=_from_db(db_schedule.updated_at),
        )

    def _db_to_manifest_entry(self, db_entry: ManifestEntryModel) -> ManifestEntry:
        return ManifestEntry(
            destination_id=db_entry.destination_id,
            schedule_id=db_entry.schedule_id,
            account=db_entry.account,
            filename=db_entry.filename,
            companion_filename=db_entry.companion_filename,
            size=db_entry.size or 0,
            created_at=_from_db(db_entry.created_at),
            seq=db_entry.seq,
        )


class InMemoryStorage(SqlAlchemyStorage):
    def __init__(self):
        super().__init__("sqlite+aiosqlite:///:memory:")
