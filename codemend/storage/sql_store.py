"""SQLAlchemy-backed stores.

SQLAlchemy sessions are blocking, so every public coroutine hands its work to
the default executor. The status guard is a conditional UPDATE, which keeps
``compare_and_set_status`` atomic across processes sharing one database.
"""
from __future__ import annotations

import asyncio
from collections import Counter
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, TypeVar

import structlog
from sqlalchemy import create_engine, exc, select, update
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from codemend.core.errors import StorageError, TransientError
from codemend.models.calibration import CalibrationRecord
from codemend.models.issue import (
    Fix,
    FixStatus,
    Issue,
    IssueType,
    Resolution,
    ReviewDecision,
    ReviewStatus,
    Severity,
)
from codemend.models.knowledge import KnowledgeEntry, KnowledgeType
from codemend.storage.interfaces import IssueStore, KnowledgeBackend, OutcomeHistory
from codemend.storage.sql_models import Base, DecisionRow, FixRow, IssueRow, KnowledgeRow, OutcomeRow

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class SQLDatabase:
    """Owns the engine and session factory shared by the SQL stores."""

    def __init__(self, db_url: str = "sqlite:///.codemend/codemend.db", echo: bool = False):
        self.db_url = db_url
        self.echo = echo
        self.engine = None
        self.SessionLocal: Optional[sessionmaker] = None

    def init(self) -> None:
        if self.engine is not None:
            return
        url = make_url(self.db_url)
        kwargs: Dict[str, Any] = {"echo": self.echo}
        if url.get_backend_name() == "sqlite":
            kwargs["connect_args"] = {"check_same_thread": False}
            if not url.database or url.database == ":memory:":
                kwargs["poolclass"] = StaticPool
            else:
                Path(url.database).parent.mkdir(parents=True, exist_ok=True)
        self.engine = create_engine(self.db_url, **kwargs)
        Base.metadata.create_all(self.engine)
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)
        logger.info("database_initialized", backend=url.get_backend_name())

    def close(self) -> None:
        if self.engine is not None:
            self.engine.dispose()
            self.engine = None
            self.SessionLocal = None

    def get_session(self) -> Session:
        if self.SessionLocal is None:
            raise RuntimeError("SQLDatabase.init() has not been called")
        return self.SessionLocal()

    async def run(self, fn: Callable[[Session], T]) -> T:
        """Runs ``fn`` with a fresh session in the default executor, committing on success."""

        def _work() -> T:
            session = self.get_session()
            try:
                result = fn(session)
                session.commit()
                return result
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, _work)
        except (exc.OperationalError, exc.TimeoutError, exc.DisconnectionError) as e:
            # locked database, dropped connection, exhausted pool
            logger.warning("database_unavailable", error=str(e))
            raise TransientError(f"Database unavailable: {e}") from e
        except exc.SQLAlchemyError as e:
            logger.error("database_error", error=str(e))
            raise StorageError(f"Database error: {e}") from e


def _as_utc(value: datetime) -> datetime:
    # SQLite drops tzinfo on the way back
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class _SQLStoreBase:
    def __init__(self, database: SQLDatabase):
        self.database = database

    async def init(self) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self.database.init)

    async def close(self) -> None:
        self.database.close()


class SQLIssueStore(_SQLStoreBase, IssueStore):
    @staticmethod
    def _issue_payload(issue: Issue) -> Dict[str, Any]:
        return issue.model_dump(mode="json", exclude={"status", "fix"})

    @staticmethod
    def _to_issue(row: IssueRow, fix_row: Optional[FixRow]) -> Issue:
        data = dict(row.payload)
        data["status"] = row.status
        if fix_row is not None:
            data["fix"] = SQLIssueStore._to_fix(fix_row)
        return Issue.model_validate(data)

    @staticmethod
    def _to_fix(row: FixRow) -> Fix:
        data = dict(row.payload)
        data["active"] = row.active
        data["status"] = row.status
        return Fix.model_validate(data)

    @staticmethod
    def _active_fix_row(session: Session, issue_id: str) -> Optional[FixRow]:
        stmt = select(FixRow).where(FixRow.issue_id == issue_id, FixRow.active.is_(True)).order_by(FixRow.seq.desc())
        return session.execute(stmt).scalars().first()

    async def add_issue(self, issue: Issue) -> Issue:
        def _add(session: Session) -> Issue:
            session.add(
                IssueRow(
                    id=issue.id,
                    file_path=issue.file_path,
                    type=issue.type.value,
                    severity=issue.severity.value,
                    status=issue.status.value,
                    detected_at=issue.detected_at,
                    payload=self._issue_payload(issue),
                )
            )
            if issue.fix is not None:
                fix = issue.fix.model_copy(update={"issue_id": issue.id, "active": True})
                session.add(FixRow(
                    id=fix.id, issue_id=issue.id, active=True, status=fix.status.value,
                    payload=fix.model_dump(mode="json"),
                ))
            return issue.model_copy(deep=True)

        return await self.database.run(_add)

    async def get_issue(self, issue_id: str) -> Optional[Issue]:
        def _get(session: Session) -> Optional[Issue]:
            row = session.get(IssueRow, issue_id)
            if row is None:
                return None
            return self._to_issue(row, self._active_fix_row(session, issue_id))

        return await self.database.run(_get)

    async def list_issues(
        self,
        status: Optional[ReviewStatus] = None,
        severity: Optional[Severity] = None,
        type: Optional[IssueType] = None,
        file_path: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Issue]:
        def _list(session: Session) -> List[Issue]:
            stmt = select(IssueRow)
            if status is not None:
                stmt = stmt.where(IssueRow.status == status.value)
            if severity is not None:
                stmt = stmt.where(IssueRow.severity == severity.value)
            if type is not None:
                stmt = stmt.where(IssueRow.type == type.value)
            if file_path is not None:
                stmt = stmt.where(IssueRow.file_path == file_path)
            stmt = stmt.order_by(IssueRow.detected_at).offset(offset).limit(limit)
            rows = session.execute(stmt).scalars().all()
            return [self._to_issue(r, self._active_fix_row(session, r.id)) for r in rows]

        return await self.database.run(_list)

    async def compare_and_set_status(
        self, issue_id: str, expected: ReviewStatus, new: ReviewStatus, decision: ReviewDecision
    ) -> bool:
        def _cas(session: Session) -> bool:
            result = session.execute(
                update(IssueRow)
                .where(IssueRow.id == issue_id, IssueRow.status == expected.value)
                .values(status=new.value)
            )
            if result.rowcount != 1:
                return False
            session.add(DecisionRow(
                id=decision.id,
                issue_id=issue_id,
                action=decision.action.value,
                from_status=decision.from_status.value,
                to_status=decision.to_status.value,
                actor=decision.actor,
                notes=decision.notes,
                timestamp=decision.timestamp,
            ))
            return True

        return await self.database.run(_cas)

    async def decisions(self, issue_id: str) -> List[ReviewDecision]:
        def _decisions(session: Session) -> List[ReviewDecision]:
            stmt = select(DecisionRow).where(DecisionRow.issue_id == issue_id).order_by(DecisionRow.seq)
            return [
                ReviewDecision(
                    id=r.id,
                    issue_id=r.issue_id,
                    action=r.action,
                    from_status=r.from_status,
                    to_status=r.to_status,
                    actor=r.actor,
                    notes=r.notes or "",
                    timestamp=_as_utc(r.timestamp),
                )
                for r in session.execute(stmt).scalars()
            ]

        return await self.database.run(_decisions)

    async def attach_fix(self, issue_id: str, fix: Fix) -> Fix:
        stored = fix.model_copy(update={"issue_id": issue_id, "active": True})

        def _attach(session: Session) -> Fix:
            for row in session.execute(
                select(FixRow).where(FixRow.issue_id == issue_id, FixRow.active.is_(True))
            ).scalars():
                row.active = False
                if row.status == FixStatus.PROPOSED.value:
                    row.status = FixStatus.SUPERSEDED.value
            session.add(FixRow(
                id=stored.id, issue_id=issue_id, active=True, status=stored.status.value,
                payload=stored.model_dump(mode="json"),
            ))
            return stored

        return await self.database.run(_attach)

    async def update_fix(self, fix: Fix) -> None:
        def _update(session: Session) -> None:
            row = session.execute(select(FixRow).where(FixRow.id == fix.id)).scalar_one_or_none()
            if row is None:
                raise KeyError(fix.id)
            row.active = fix.active
            row.status = fix.status.value
            row.payload = fix.model_dump(mode="json")

        await self.database.run(_update)

    async def fixes(self, issue_id: str) -> List[Fix]:
        def _fixes(session: Session) -> List[Fix]:
            stmt = select(FixRow).where(FixRow.issue_id == issue_id).order_by(FixRow.seq)
            return [self._to_fix(r) for r in session.execute(stmt).scalars()]

        return await self.database.run(_fixes)

    async def update_resolution(self, issue_id: str, resolution: Resolution) -> None:
        def _resolve(session: Session) -> None:
            row = session.get(IssueRow, issue_id)
            if row is None:
                return
            payload = dict(row.payload)
            payload["resolution"] = resolution.model_dump(mode="json")
            row.payload = payload

        await self.database.run(_resolve)

    async def statistics(self) -> Dict[str, Any]:
        def _stats(session: Session) -> Dict[str, Any]:
            rows = session.execute(select(IssueRow.status, IssueRow.severity, IssueRow.type)).all()
            return {
                "total": len(rows),
                "by_status": dict(Counter(r[0] for r in rows)),
                "by_severity": dict(Counter(r[1] for r in rows)),
                "by_type": dict(Counter(r[2] for r in rows)),
            }

        return await self.database.run(_stats)


class SQLKnowledgeBackend(_SQLStoreBase, KnowledgeBackend):
    @staticmethod
    def _to_entry(row: KnowledgeRow) -> KnowledgeEntry:
        data = dict(row.payload)
        data.update(
            usage_count=row.usage_count,
            success_count=row.success_count,
            confidence=row.confidence,
            updated_at=_as_utc(row.updated_at),
        )
        return KnowledgeEntry.model_validate(data)

    async def put(self, entry: KnowledgeEntry) -> None:
        def _put(session: Session) -> None:
            row = session.get(KnowledgeRow, entry.id)
            if row is None:
                row = KnowledgeRow(id=entry.id)
                session.add(row)
            row.type = entry.type.value
            row.source = entry.source
            row.confidence = entry.confidence
            row.usage_count = entry.usage_count
            row.success_count = entry.success_count
            row.updated_at = entry.updated_at
            row.payload = entry.model_dump(mode="json", exclude={"success_rate"})

        await self.database.run(_put)

    async def get(self, entry_id: str) -> Optional[KnowledgeEntry]:
        def _get(session: Session) -> Optional[KnowledgeEntry]:
            row = session.get(KnowledgeRow, entry_id)
            return self._to_entry(row) if row else None

        return await self.database.run(_get)

    async def all(self, type: Optional[KnowledgeType] = None) -> List[KnowledgeEntry]:
        def _all(session: Session) -> List[KnowledgeEntry]:
            stmt = select(KnowledgeRow)
            if type is not None:
                stmt = stmt.where(KnowledgeRow.type == type.value)
            return [self._to_entry(r) for r in session.execute(stmt).scalars()]

        return await self.database.run(_all)

    async def record_usage(self, entry_id: str, success: bool) -> Optional[KnowledgeEntry]:
        def _record(session: Session) -> Optional[KnowledgeEntry]:
            result = session.execute(
                update(KnowledgeRow)
                .where(KnowledgeRow.id == entry_id)
                .values(
                    usage_count=KnowledgeRow.usage_count + 1,
                    success_count=KnowledgeRow.success_count + (1 if success else 0),
                    updated_at=datetime.now(timezone.utc),
                )
            )
            if result.rowcount != 1:
                return None
            session.flush()
            row = session.get(KnowledgeRow, entry_id, populate_existing=True)
            return self._to_entry(row)

        return await self.database.run(_record)


class SQLOutcomeHistory(_SQLStoreBase, OutcomeHistory):
    async def append(self, record: CalibrationRecord) -> None:
        def _append(session: Session) -> None:
            session.add(OutcomeRow(
                fix_id=record.fix_id,
                method=record.method,
                domain=record.domain,
                predicted=record.predicted,
                actual=record.actual,
                recorded_at=record.recorded_at,
            ))

        await self.database.run(_append)

    async def records(
        self, method: Optional[str] = None, domain: Optional[str] = None, limit: Optional[int] = None
    ) -> List[CalibrationRecord]:
        def _records(session: Session) -> List[CalibrationRecord]:
            stmt = select(OutcomeRow)
            if method is not None:
                stmt = stmt.where(OutcomeRow.method == method)
            if domain is not None:
                stmt = stmt.where(OutcomeRow.domain == domain)
            stmt = stmt.order_by(OutcomeRow.seq.desc())
            if limit is not None:
                stmt = stmt.limit(limit)
            rows = list(session.execute(stmt).scalars())
            rows.reverse()
            return [
                CalibrationRecord(
                    fix_id=r.fix_id,
                    method=r.method,
                    domain=r.domain,
                    predicted=r.predicted,
                    actual=r.actual,
                    recorded_at=_as_utc(r.recorded_at),
                )
                for r in rows
            ]

        return await self.database.run(_records)


def build_sql_stores(db_url: str, echo: bool = False):
    """Returns (issue store, knowledge backend, outcome history) sharing one database."""
    database = SQLDatabase(db_url, echo=echo)
    return SQLIssueStore(database), SQLKnowledgeBackend(database), SQLOutcomeHistory(database)
