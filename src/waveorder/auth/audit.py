"""Audit trail of authentication decisions."""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import asdict, dataclass

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from waveorder.storage.repositories import AuditLogRepository

logger = structlog.get_logger()


@dataclass(frozen=True)
class AuditEvent:
    """Everything needed to reconstruct one authentication decision."""

    key_kind: str
    outcome: str
    reason: str | None = None
    required_scope: str | None = None
    key_id: uuid.UUID | None = None
    owner_id: uuid.UUID | None = None
    key_preview: str | None = None
    method: str | None = None
    path: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None


class AuditLogger:
    """Write audit events to the structured log and the audit table.

    The database write uses its own session so it survives a rollback of
    the route's transaction. It is best-effort: a storage failure or a
    write that misses ``timeout`` is logged and does not change the
    authentication decision.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        timeout: float = 2.0,
    ) -> None:
        self._session_factory = session_factory
        self._timeout = timeout

    async def record(self, event: AuditEvent) -> None:
        log = logger.bind(
            outcome=event.outcome,
            reason=event.reason,
            key_kind=event.key_kind,
            key_id=str(event.key_id) if event.key_id else None,
            owner_id=str(event.owner_id) if event.owner_id else None,
            required_scope=event.required_scope,
            path=event.path,
            ip_address=event.ip_address,
        )
        if event.outcome == "admitted":
            log.info("auth_admitted")
        else:
            log.warning("auth_denied")

        try:
            await asyncio.wait_for(self._persist(event), timeout=self._timeout)
        except TimeoutError:
            logger.error("auth_audit_write_timeout", timeout=self._timeout)
        except SQLAlchemyError as e:
            logger.error("auth_audit_write_failed", error=type(e).__name__)

    async def _persist(self, event: AuditEvent) -> None:
        async with self._session_factory() as session:
            await AuditLogRepository(session).append(**asdict(event))
            await session.commit()
