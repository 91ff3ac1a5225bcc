"""Write-through coordinator: one logical transaction over the database and a device.

A write-through function receives a :class:`WriteThroughTransaction` carrying
an open database session and a command executor bound to the device. The
function inserts/updates its rows, runs the RouterOS command and patches the
row with the returned object id. The coordinator commits on success.

Failure semantics:
- RouterOS command fails: the database transaction rolls back, nothing to undo
- RouterOS ``add`` succeeded but the function or commit then fails: every
  object created in the transaction gets a best-effort compensating remove
- compensating remove fails: the object is recorded in ``orphaned_objects``
  and retried later by :meth:`WriteThroughCoordinator.reconcile_orphans`;
  the caller still sees the original error
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from mikrops.domain.exceptions import DomainError
from mikrops.infra.db.models import OrphanedObject
from mikrops.infra.db.session import DatabaseSessionManager
from mikrops.infra.observability import metrics
from mikrops.infra.routeros.exceptions import RouterOSError
from mikrops.infra.routeros.executor import CommandExecutor
from mikrops.infra.routeros.pool import ConnectionPool, DeviceEndpoint

logger = logging.getLogger(__name__)

T = TypeVar("T")


class WriteThroughTransaction:
    """Database session plus recorded RouterOS commands for one write-through call."""

    def __init__(self, session: AsyncSession, executor: CommandExecutor, device_id: str) -> None:
        self.session = session
        self.executor = executor
        self.device_id = device_id
        self.created: list[tuple[str, str]] = []

    async def add(self, path: str, args: Mapping[str, object]) -> str:
        object_id = await self.executor.add(path, args)
        self.created.append((path, object_id))
        return object_id

    async def set(self, path: str, object_id: str, args: Mapping[str, object]) -> None:
        await self.executor.set(path, object_id, args)

    async def remove(self, path: str, object_id: str) -> None:
        """Remove; a missing object counts as removed."""
        await self.executor.remove(path, object_id, missing_ok=True)

    async def print(
        self, path: str, query: Mapping[str, object] | None = None
    ) -> list[dict[str, str]]:
        return await self.executor.print(path, query=query)


@dataclass
class _PendingOrphan:
    id: str
    device_id: str
    path: str
    object_id: str


EndpointResolver = Callable[[str], Awaitable[DeviceEndpoint]]
ExecutorFactory = Callable[[Any], CommandExecutor]


class WriteThroughCoordinator:
    """Runs database + device mutations as one logical transaction.

    Example:
        async def create(tx: WriteThroughTransaction) -> Customer:
            row = Customer(...)
            tx.session.add(row)
            await tx.session.flush()
            row.external_object_id = await tx.add("/ppp/secret", {...})
            return row

        customer = await coordinator.run(endpoint, create)
    """

    def __init__(
        self,
        session_manager: DatabaseSessionManager,
        pool: ConnectionPool,
        *,
        executor_factory: ExecutorFactory = CommandExecutor,
    ) -> None:
        self.db = session_manager
        self.pool = pool
        self._executor_factory = executor_factory
        self._device_locks: dict[str, asyncio.Lock] = {}

    def _device_lock(self, device_id: str) -> asyncio.Lock:
        lock = self._device_locks.get(device_id)
        if lock is None:
            lock = asyncio.Lock()
            self._device_locks[device_id] = lock
        return lock

    async def run(
        self,
        endpoint: DeviceEndpoint,
        fn: Callable[[WriteThroughTransaction], Awaitable[T]],
    ) -> T:
        """Run ``fn`` inside a database transaction against ``endpoint``.

        Mutations against one device are serialized.

        Raises:
            Whatever ``fn`` or the commit raised, after compensation
        """
        async with self._device_lock(endpoint.device_id):
            async with self.pool.borrow(endpoint) as connection:
                executor = self._executor_factory(connection)
                tx: WriteThroughTransaction | None = None
                try:
                    async with self.db.session() as session:
                        tx = WriteThroughTransaction(session, executor, endpoint.device_id)
                        result = await fn(tx)
                except BaseException as error:
                    metrics.record_write_through(success=False)
                    if tx is not None and tx.created:
                        await self._compensate(executor, tx, error)
                    raise

        metrics.record_write_through(success=True)
        return result

    async def _compensate(
        self,
        executor: CommandExecutor,
        tx: WriteThroughTransaction,
        error: BaseException,
    ) -> None:
        for path, object_id in reversed(tx.created):
            extra = {"device_id": tx.device_id, "path": path, "object_id": object_id}
            try:
                await executor.remove(path, object_id, missing_ok=True)
            except RouterOSError as e:
                metrics.record_compensation(success=False)
                logger.error(
                    "Compensating remove failed, recording orphan",
                    extra={**extra, "error": str(e)},
                )
                await self._record_orphan(
                    tx.device_id, path, object_id, reason=f"{type(error).__name__}: {error}"
                )
                continue

            metrics.record_compensation(success=True)
            logger.info(
                "Rolled back RouterOS object after failed write-through",
                extra={**extra, "error": str(error)},
            )

    async def _record_orphan(self, device_id: str, path: str, object_id: str, reason: str) -> None:
        try:
            async with self.db.session() as session:
                session.add(
                    OrphanedObject(
                        device_id=device_id,
                        path=path,
                        object_id=object_id,
                        reason=reason,
                    )
                )
        except SQLAlchemyError:
            logger.exception(
                "Could not persist orphaned RouterOS object",
                extra={"device_id": device_id, "path": path, "object_id": object_id},
            )
            return
        metrics.record_orphan("recorded")

    async def pending_orphans(self, max_attempts: int | None = None) -> list[OrphanedObject]:
        async with self.db.session() as session:
            stmt = select(OrphanedObject).where(OrphanedObject.resolved_at.is_(None))
            if max_attempts is not None:
                stmt = stmt.where(OrphanedObject.attempts < max_attempts)
            result = await session.execute(stmt.order_by(OrphanedObject.created_at))
            return list(result.scalars().all())

    async def reconcile_orphans(
        self,
        resolve_endpoint: EndpointResolver,
        *,
        max_attempts: int = 10,
    ) -> dict[str, int]:
        """Retry the remove of every pending orphan.

        Returns:
            Counts of ``resolved`` and ``failed`` orphans
        """
        pending = [
            _PendingOrphan(o.id, o.device_id, o.path, o.object_id)
            for o in await self.pending_orphans(max_attempts)
        ]
        resolved = failed = 0

        for orphan in pending:
            extra = {"device_id": orphan.device_id, "path": orphan.path, "object_id": orphan.object_id}
            succeeded = True
            try:
                endpoint = await resolve_endpoint(orphan.device_id)
                async with self._device_lock(orphan.device_id):
                    async with self.pool.borrow(endpoint) as connection:
                        await self._executor_factory(connection).remove(
                            orphan.path, orphan.object_id, missing_ok=True
                        )
            except (RouterOSError, DomainError) as e:
                succeeded = False
                logger.warning("Orphan remove retry failed", extra={**extra, "error": str(e)})

            async with self.db.session() as session:
                row = await session.get(OrphanedObject, orphan.id)
                if row is not None:
                    row.attempts += 1
                    if succeeded:
                        row.resolved_at = datetime.now(UTC)

            if succeeded:
                resolved += 1
                metrics.record_orphan("resolved")
                logger.info("Orphaned RouterOS object removed", extra=extra)
            else:
                failed += 1
                metrics.record_orphan("retry_failed")

        return {"resolved": resolved, "failed": failed}


__all__ = ["WriteThroughCoordinator", "WriteThroughTransaction"]
