"""Persistence for certificate signing requests.

The store exposes two write primitives: :meth:`RequestStore.insert` and
:meth:`RequestStore.transition_if_match`. The latter is a compare-and-swap
evaluated by the database in a single ``UPDATE ... WHERE`` statement, which is
what makes concurrent verify calls safe without any in-process locking.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from certsign.core.db_retry import with_db_retry
from certsign.models.certificate_request import CertificateSigningRequest, RequestStatus


class StorageError(RuntimeError):
    """The database was unreachable or rejected the operation."""


class RecordNotFound(LookupError):
    """No certificate signing request exists with the given id."""


def utcnow() -> datetime:
    # Columns hold naive UTC; MySQL DATETIME has no zone.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _aware(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


@dataclass(frozen=True, slots=True)
class CertificateRequestRecord:
    """Detached snapshot of one ``certificate_signing_requests`` row."""

    id: str
    created_at: datetime
    modified_at: datetime
    accessed_at: datetime
    csr: str
    email_address: str
    status: RequestStatus
    status_message: str
    cert: str
    verification_code: str
    signing_claim: str | None = None
    signing_claimed_at: datetime | None = None

    @classmethod
    def from_row(cls, row: CertificateSigningRequest) -> "CertificateRequestRecord":
        return cls(
            id=row.id,
            created_at=_aware(row.created_at),
            modified_at=_aware(row.modified_at),
            accessed_at=_aware(row.accessed_at),
            csr=row.csr,
            email_address=row.email_address,
            status=RequestStatus(row.status),
            status_message=row.status_message,
            cert=row.cert or "",
            verification_code=row.verification_code,
            signing_claim=row.signing_claim,
            signing_claimed_at=_aware(row.signing_claimed_at),
        )


@dataclass(frozen=True, slots=True)
class TransitionResult:
    record: CertificateRequestRecord
    applied: bool


_MUTABLE_COLUMNS = {
    "modified_at",
    "accessed_at",
    "status",
    "status_message",
    "cert",
    "signing_claim",
    "signing_claimed_at",
}


class RequestStore:
    """Adapter around an explicitly supplied async session factory."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        retry_attempts: int = 4,
        retry_base_delay: float = 0.05,
        retry_jitter: float = 0.025,
    ):
        self._session_factory = session_factory
        self._retry = dict(
            attempts=retry_attempts, base_delay=retry_base_delay, jitter=retry_jitter
        )

    async def insert(
        self, *, csr: str, email_address: str, verification_code: str
    ) -> CertificateRequestRecord:
        """Persist a new PENDING request under a fresh id."""

        record_id = uuid.uuid4().hex

        async def _insert() -> CertificateRequestRecord:
            now = utcnow()
            row = CertificateSigningRequest(
                id=record_id,
                created_at=now,
                modified_at=now,
                accessed_at=now,
                csr=csr,
                email_address=email_address,
                status=RequestStatus.PENDING.value,
                status_message=RequestStatus.PENDING.message,
                cert="",
                verification_code=verification_code,
                signing_claim=None,
                signing_claimed_at=None,
            )
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(row)
                return CertificateRequestRecord.from_row(row)

        try:
            return await with_db_retry(_insert, **self._retry)
        except SQLAlchemyError as exc:
            raise StorageError(f"Unable to insert certificate signing request: {exc}") from exc

    async def transition_if_match(
        self,
        record_id: str,
        expected: Mapping[str, Any],
        mutation: Mapping[str, Any],
    ) -> TransitionResult:
        """Apply ``mutation`` to the row only if every ``expected`` column matches.

        The conditional update and the read of the resulting row share one
        transaction. Raises :class:`RecordNotFound` when no row has
        ``record_id``.
        """

        unknown = (set(expected) - {"status", "signing_claim"}) | (
            set(mutation) - _MUTABLE_COLUMNS
        )
        if unknown:
            raise ValueError(f"Unsupported columns for transition: {sorted(unknown)}")

        conditions = [CertificateSigningRequest.id == record_id]
        for column, value in expected.items():
            attr = getattr(CertificateSigningRequest, column)
            if isinstance(value, RequestStatus):
                value = value.value
            conditions.append(attr.is_(None) if value is None else attr == value)
        values = {
            column: value.value if isinstance(value, RequestStatus) else value
            for column, value in mutation.items()
        }

        async def _transition() -> TransitionResult:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        update(CertificateSigningRequest)
                        .where(*conditions)
                        .values(**values)
                        .execution_options(synchronize_session=False)
                    )
                    row = await session.scalar(
                        select(CertificateSigningRequest).where(
                            CertificateSigningRequest.id == record_id
                        )
                    )
                    if row is None:
                        raise RecordNotFound(record_id)
                    return TransitionResult(
                        record=CertificateRequestRecord.from_row(row),
                        applied=result.rowcount == 1,
                    )

        try:
            outcome = await with_db_retry(_transition, **self._retry)
        except SQLAlchemyError as exc:
            raise StorageError(
                f"Unable to update certificate signing request '{record_id}': {exc}"
            ) from exc
        logger.bind(
            resource_id=record_id,
            applied=outcome.applied,
            fields=sorted(values),
        ).debug("store_transition")
        return outcome

    async def fetch_and_touch(self, record_id: str) -> CertificateRequestRecord:
        """Read a request, refreshing its ``accessed_at`` in the same transaction."""

        outcome = await self.transition_if_match(record_id, {}, {"accessed_at": utcnow()})
        return outcome.record
