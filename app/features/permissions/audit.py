"""
Audit trail for authorization decisions.

``AuditSink.record`` must return immediately: the decision it describes has
already been made. ``QueuedAuditSink`` hands records to a bounded in-process
queue drained by a background task; when the queue is full the oldest
pending record is dropped.
"""
import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional, Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core import config
from app.features.permissions.models import AuditLog
from app.features.permissions.schemas import AuditRecord
from app.utils import get_logger


log = get_logger(__name__)

ACCESS_DENIED = "ACCESS_DENIED"
ACCESS_GRANTED = "ACCESS_GRANTED"
ANONYMOUS_ACTOR = "anonymous"
UNKNOWN_TENANT = "unknown"


class AuditSink(Protocol):
    def record(self, event: AuditRecord) -> None:
        ...


class AuditWriter(Protocol):
    async def write(self, event: AuditRecord) -> None:
        ...


def build_access_record(
    *,
    event: str,
    actor_id: str,
    tenant_id: Optional[str],
    required_permission: str,
    reason: str,
    actor_ip: Optional[str] = None,
    project_id: Optional[str] = None,
    role_id: Optional[str] = None,
    role_name: Optional[str] = None,
    granted_permissions: Optional[Iterable[str]] = None,
    severity: str = "WARNING",
) -> AuditRecord:
    """
    Build an access decision record.

    The attempted permission is the audited resource; ``granted_permissions``
    is kept sorted so denials can be compared across requests.
    """
    now = datetime.now(timezone.utc)
    metadata: Dict[str, Any] = {
        "event": event,
        "severity": severity,
        "project_id": project_id,
        "role_id": role_id,
        "role_name": role_name,
        "required_permission": required_permission,
        "granted_permissions": sorted(granted_permissions) if granted_permissions is not None else None,
        "reason": reason,
        "detected_at": now.isoformat(),
    }
    return AuditRecord(
        timestamp=now,
        tenant_id=tenant_id or UNKNOWN_TENANT,
        actor_id=actor_id,
        actor_ip=actor_ip,
        resource_type="Permission",
        resource_id=required_permission,
        # Closest action type to "attempted access"
        action_type="VIEW",
        metadata=metadata,
    )


class LoggingAuditSink:
    """Writes records to the application log only."""

    def record(self, event: AuditRecord) -> None:
        log.info(
            f"AUDIT {event.metadata.get('event')}: actor={event.actor_id} tenant={event.tenant_id} "
            f"{event.resource_type}={event.resource_id} reason={event.metadata.get('reason')}"
        )


class SqlAuditWriter:
    """Persists records to the ``audit_logs`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def write(self, event: AuditRecord) -> None:
        async with self._session_factory() as db:
            db.add(AuditLog(
                event_uuid=event.event_id,
                timestamp=event.timestamp,
                tenant_id=event.tenant_id,
                actor_id=event.actor_id,
                actor_ip=event.actor_ip,
                resource_type=event.resource_type,
                resource_id=event.resource_id,
                action_type=event.action_type,
                details=event.metadata,
            ))
            await db.commit()


class QueuedAuditSink:
    """
    Fire-and-forget sink backed by a bounded ``asyncio.Queue``.

    Usage:
        sink = QueuedAuditSink(SqlAuditWriter(AsyncSessionLocal))
        await sink.start()
        sink.record(event)      # never blocks
        await sink.stop()       # drains what is pending
    """

    def __init__(self, writer: AuditWriter, maxsize: int = config.AUDIT_QUEUE_MAXSIZE):
        self._writer = writer
        self._queue: asyncio.Queue[AuditRecord] = asyncio.Queue(maxsize=maxsize)
        self._task: Optional[asyncio.Task] = None
        self.dropped = 0

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def record(self, event: AuditRecord) -> None:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            try:
                oldest = self._queue.get_nowait()
                self._queue.task_done()
                self.dropped += 1
                log.warning(f"Audit queue full, dropped event {oldest.event_id}")
            except asyncio.QueueEmpty:
                pass
            self._queue.put_nowait(event)

    async def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._consume(), name="audit-sink")

    async def stop(self) -> None:
        if self._task is None:
            return
        await self._queue.join()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def flush(self) -> None:
        """Wait until every queued record has been handed to the writer."""
        await self._queue.join()

    async def _consume(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._writer.write(event)
            except Exception as e:
                log.error(f"Failed to write audit event {event.event_id}: {e}")
            finally:
                self._queue.task_done()
