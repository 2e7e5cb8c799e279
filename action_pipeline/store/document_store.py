"""
Document Store — the CRM domain records the Action Pipeline reads and writes.

Prototype: SQLite. Production: a server database with multi-document
transactions.

Behavioral Contract:
- Typed lookups by id and by secondary key (contact email, message id,
  thread id, stage within a pipeline).
- Every call is bounded by ``timeout_seconds``; a timeout surfaces as
  StoreUnavailableError. The abandoned worker settles first, so a late
  write can never outlive the transaction it was issued in.
- ``transaction()`` yields a TransactionScope. Writes made through the scope
  commit together or not at all. Scopes are serialized on the single
  connection, so two actions never share one. Waiting for a scope polls the
  lock, so a cancelled waiter never holds it.
"""

import asyncio
import logging
import sqlite3
import threading
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, List, Optional, Type, TypeVar
from uuid import uuid4

from pydantic import BaseModel

from action_pipeline.models.records import (
    Activity,
    CalendarActivity,
    Contact,
    EmailActivity,
    Opportunity,
    PipelineStage,
)

T = TypeVar("T", bound=BaseModel)

logger = logging.getLogger(__name__)

LOCK_POLL_SECONDS = 0.005


class StoreError(Exception):
    """Base class for document store failures."""
    pass


class EntityNotFoundError(StoreError):
    """A referenced entity does not exist. Fatal for the current attempt."""
    pass


class StoreUnavailableError(StoreError):
    """The store timed out, was busy, or raised a driver error. Retryable."""
    pass


class DocumentStore:
    """SQLite-backed document store. One JSON document per row, keyed columns indexed."""

    def __init__(self, db_path: str = ":memory:", timeout_seconds: float = 10.0):
        self.db_path = db_path
        self.timeout_seconds = timeout_seconds
        # Autocommit mode; transactions are opened explicitly with BEGIN
        self._conn = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._init_schema()

    def _init_schema(self) -> None:
        """Create the collections if they don't exist."""
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS opportunities (
                id TEXT PRIMARY KEY,
                pipeline_id TEXT,
                stage_id TEXT,
                record_json TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS pipeline_stages (
                id TEXT PRIMARY KEY,
                pipeline_id TEXT NOT NULL,
                record_json TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_stages_pipeline ON pipeline_stages(pipeline_id);
            CREATE TABLE IF NOT EXISTS contacts (
                id TEXT PRIMARY KEY,
                email TEXT,
                organization_id TEXT,
                full_name TEXT NOT NULL,
                record_json TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_contacts_email ON contacts(email);
            CREATE TABLE IF NOT EXISTS activities (
                id TEXT PRIMARY KEY,
                opportunity_id TEXT NOT NULL,
                type TEXT NOT NULL,
                record_json TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_activities_opportunity ON activities(opportunity_id);
            CREATE TABLE IF NOT EXISTS email_activities (
                id TEXT PRIMARY KEY,
                opportunity_id TEXT NOT NULL,
                message_id TEXT NOT NULL,
                thread_id TEXT,
                record_json TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_email_message ON email_activities(message_id);
            CREATE INDEX IF NOT EXISTS idx_email_thread ON email_activities(thread_id);
            CREATE TABLE IF NOT EXISTS calendar_activities (
                id TEXT PRIMARY KEY,
                opportunity_id TEXT NOT NULL,
                record_json TEXT NOT NULL
            );
        """)

    # === RAW OPERATIONS (caller holds the lock) ===

    def _put(self, table: str, record: BaseModel, **keys) -> None:
        columns = ["id", *keys, "record_json"]
        placeholders = ", ".join("?" for _ in columns)
        self._conn.execute(
            f"INSERT OR REPLACE INTO {table} ({', '.join(columns)}) VALUES ({placeholders})",
            (record.id, *keys.values(), record.model_dump_json()),
        )

    def _get(self, table: str, model: Type[T], record_id: str) -> Optional[T]:
        row = self._conn.execute(
            f"SELECT record_json FROM {table} WHERE id = ?", (record_id,)
        ).fetchone()
        return model.model_validate_json(row["record_json"]) if row else None

    def _find(self, table: str, model: Type[T], column: str, value: str) -> Optional[T]:
        row = self._conn.execute(
            f"SELECT record_json FROM {table} WHERE {column} = ? ORDER BY rowid LIMIT 1",
            (value,),
        ).fetchone()
        return model.model_validate_json(row["record_json"]) if row else None

    def _list(self, table: str, model: Type[T], column: str, value: str) -> List[T]:
        rows = self._conn.execute(
            f"SELECT record_json FROM {table} WHERE {column} = ? ORDER BY rowid",
            (value,),
        ).fetchall()
        return [model.model_validate_json(r["record_json"]) for r in rows]

    def _put_opportunity(self, opportunity: Opportunity) -> None:
        self._put(
            "opportunities", opportunity,
            pipeline_id=opportunity.pipeline_id, stage_id=opportunity.stage_id,
        )

    def _put_stage(self, stage: PipelineStage) -> None:
        self._put("pipeline_stages", stage, pipeline_id=stage.pipeline_id)

    def _put_contact(self, contact: Contact) -> None:
        self._put(
            "contacts", contact,
            email=contact.email.lower() if contact.email else None,
            organization_id=contact.organization_id,
            full_name=f"{contact.first_name} {contact.last_name}".strip().lower(),
        )

    def _put_activity(self, activity: Activity) -> None:
        self._put(
            "activities", activity,
            opportunity_id=activity.opportunity_id, type=activity.type.value,
        )

    def _put_email_activity(self, email: EmailActivity) -> None:
        self._put(
            "email_activities", email,
            opportunity_id=email.opportunity_id,
            message_id=email.message_id,
            thread_id=email.thread_id,
        )

    def _put_calendar_activity(self, meeting: CalendarActivity) -> None:
        self._put("calendar_activities", meeting, opportunity_id=meeting.opportunity_id)

    def _get_stage(self, stage_id: str, pipeline_id: Optional[str]) -> Optional[PipelineStage]:
        stage = self._get("pipeline_stages", PipelineStage, stage_id)
        if stage is None or stage.pipeline_id != pipeline_id:
            return None
        return stage

    def _find_contact_by_name(
        self, first_name: str, last_name: str, organization_id: Optional[str]
    ) -> Optional[Contact]:
        full_name = f"{first_name} {last_name}".strip().lower()
        rows = self._conn.execute(
            "SELECT record_json FROM contacts WHERE full_name = ? ORDER BY rowid",
            (full_name,),
        ).fetchall()
        for row in rows:
            contact = Contact.model_validate_json(row["record_json"])
            if organization_id is None or contact.organization_id == organization_id:
                return contact
        return None

    def _thread_exists(self, thread_id: str) -> bool:
        row = self._conn.execute(
            "SELECT 1 FROM email_activities WHERE thread_id = ? LIMIT 1", (thread_id,)
        ).fetchone()
        return row is not None

    def _count(self, table: str) -> int:
        row = self._conn.execute(f"SELECT COUNT(*) AS cnt FROM {table}").fetchone()
        return row["cnt"]

    # === LOCKING / TIMEOUTS ===

    def _locked(self, fn: Callable, *args):
        if not self._lock.acquire(timeout=self.timeout_seconds):
            raise StoreUnavailableError("document store is busy")
        try:
            return fn(*args)
        finally:
            self._lock.release()

    async def _run(self, fn: Callable, *args, locked: bool = True):
        """
        Run a raw operation in a worker thread, bounded by the store timeout.
        A timed-out or cancelled call is allowed to settle before control
        returns, so nothing it writes lands after the caller's ROLLBACK.
        """
        target = (lambda: self._locked(fn, *args)) if locked else (lambda: fn(*args))
        worker = asyncio.ensure_future(asyncio.to_thread(target))
        try:
            return await asyncio.wait_for(asyncio.shield(worker), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            await self._abandon(worker, fn, interrupt=not locked)
            raise StoreUnavailableError(
                f"document store call {fn.__name__} timed out after {self.timeout_seconds}s"
            ) from exc
        except asyncio.CancelledError:
            await self._abandon(worker, fn, interrupt=not locked)
            raise
        except sqlite3.Error as exc:
            raise StoreUnavailableError(f"document store error: {exc}") from exc

    async def _abandon(self, worker: "asyncio.Future", fn: Callable, interrupt: bool) -> None:
        # Only a caller holding the lock owns the statement being interrupted
        if interrupt:
            self._conn.interrupt()
        await asyncio.wait([worker])
        error = None if worker.cancelled() else worker.exception()
        if error is not None:
            logger.debug("Abandoned store call %s ended with %r", fn.__name__, error)

    async def _acquire(self) -> bool:
        """Take the store lock without parking a worker thread on it."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout_seconds
        while not self._lock.acquire(blocking=False):
            if loop.time() >= deadline:
                return False
            await asyncio.sleep(LOCK_POLL_SECONDS)
        return True

    # === SEEDING / INSPECTION (synchronous) ===

    def add_opportunity(self, opportunity: Opportunity) -> Opportunity:
        self._locked(self._put_opportunity, opportunity)
        return opportunity

    def add_pipeline_stage(self, stage: PipelineStage) -> PipelineStage:
        self._locked(self._put_stage, stage)
        return stage

    def add_contact(self, contact: Contact) -> Contact:
        self._locked(self._put_contact, contact)
        return contact

    def add_email_activity(self, email: EmailActivity) -> EmailActivity:
        self._locked(self._put_email_activity, email)
        return email

    def add_calendar_activity(self, meeting: CalendarActivity) -> CalendarActivity:
        self._locked(self._put_calendar_activity, meeting)
        return meeting

    def list_activities(self, opportunity_id: str) -> List[Activity]:
        return self._locked(self._list, "activities", Activity, "opportunity_id", opportunity_id)

    def list_email_activities(self, opportunity_id: str) -> List[EmailActivity]:
        return self._locked(
            self._list, "email_activities", EmailActivity, "opportunity_id", opportunity_id
        )

    def list_calendar_activities(self, opportunity_id: str) -> List[CalendarActivity]:
        return self._locked(
            self._list, "calendar_activities", CalendarActivity, "opportunity_id", opportunity_id
        )

    def load_opportunity(self, opportunity_id: str) -> Optional[Opportunity]:
        return self._locked(self._get, "opportunities", Opportunity, opportunity_id)

    def load_contact(self, contact_id: str) -> Optional[Contact]:
        return self._locked(self._get, "contacts", Contact, contact_id)

    def count(self, collection: str) -> int:
        """Number of documents in a collection (table name)."""
        return self._locked(self._count, collection)

    # === ASYNC LOOKUPS (outside any transaction) ===

    async def get_opportunity(self, opportunity_id: str) -> Optional[Opportunity]:
        return await self._run(self._get, "opportunities", Opportunity, opportunity_id)

    async def get_pipeline_stage(
        self, stage_id: str, pipeline_id: Optional[str]
    ) -> Optional[PipelineStage]:
        """A stage, only if it belongs to ``pipeline_id``."""
        return await self._run(self._get_stage, stage_id, pipeline_id)

    async def find_contact_by_email(self, email: str) -> Optional[Contact]:
        return await self._run(self._find, "contacts", Contact, "email", email.lower())

    async def find_email_by_message_id(self, message_id: str) -> Optional[EmailActivity]:
        return await self._run(
            self._find, "email_activities", EmailActivity, "message_id", message_id
        )

    async def get_email_activity(self, record_id: str) -> Optional[EmailActivity]:
        return await self._run(self._get, "email_activities", EmailActivity, record_id)

    async def thread_exists(self, thread_id: str) -> bool:
        return await self._run(self._thread_exists, thread_id)

    # === TRANSACTIONS ===

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["TransactionScope"]:
        """
        Open an atomic scope. Commits when the block exits normally and
        rolls back on any exception, which is then re-raised.
        """
        if not await self._acquire():
            raise StoreUnavailableError("could not open a transaction: document store is busy")

        scope = TransactionScope(self, f"tx_{uuid4().hex[:12]}")
        try:
            self._conn.execute("BEGIN")
            try:
                yield scope
            except BaseException:
                # An interrupted write has already rolled the transaction back
                if self._conn.in_transaction:
                    self._conn.execute("ROLLBACK")
                raise
            else:
                self._conn.execute("COMMIT")
        finally:
            scope.closed = True
            self._lock.release()

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()


class TransactionScope:
    """
    Reads and writes bound to one open transaction.
    Valid only inside the ``async with store.transaction()`` block.
    """

    def __init__(self, store: DocumentStore, scope_id: str):
        self._store = store
        self.scope_id = scope_id
        self.closed = False

    async def _run(self, fn: Callable, *args):
        if self.closed:
            raise StoreError(f"transaction {self.scope_id} is closed")
        # The scope already holds the store lock
        return await self._store._run(fn, *args, locked=False)

    async def get_opportunity(self, opportunity_id: str) -> Optional[Opportunity]:
        return await self._run(self._store._get, "opportunities", Opportunity, opportunity_id)

    async def require_opportunity(self, opportunity_id: Optional[str]) -> Opportunity:
        opportunity = await self.get_opportunity(opportunity_id) if opportunity_id else None
        if opportunity is None:
            raise EntityNotFoundError(f"Opportunity {opportunity_id} not found")
        return opportunity

    async def get_pipeline_stage(
        self, stage_id: str, pipeline_id: Optional[str]
    ) -> Optional[PipelineStage]:
        return await self._run(self._store._get_stage, stage_id, pipeline_id)

    async def find_contact_by_email(self, email: str) -> Optional[Contact]:
        return await self._run(self._store._find, "contacts", Contact, "email", email.lower())

    async def find_contact_by_name(
        self, first_name: str, last_name: str, organization_id: Optional[str]
    ) -> Optional[Contact]:
        return await self._run(
            self._store._find_contact_by_name, first_name, last_name, organization_id
        )

    async def get_calendar_activity(self, record_id: str) -> Optional[CalendarActivity]:
        return await self._run(
            self._store._get, "calendar_activities", CalendarActivity, record_id
        )

    async def insert_activity(self, activity: Activity) -> Activity:
        await self._run(self._store._put_activity, activity)
        return activity

    async def insert_email_activity(self, email: EmailActivity) -> EmailActivity:
        await self._run(self._store._put_email_activity, email)
        return email

    async def save_calendar_activity(self, meeting: CalendarActivity) -> CalendarActivity:
        await self._run(self._store._put_calendar_activity, meeting)
        return meeting

    async def save_contact(self, contact: Contact) -> Contact:
        await self._run(self._store._put_contact, contact)
        return contact

    async def save_opportunity(self, opportunity: Opportunity) -> Opportunity:
        await self._run(self._store._put_opportunity, opportunity)
        return opportunity
