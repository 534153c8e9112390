# keygate/services/limits.py
"""Límite por IP del solicitante y cupo de keys del plan del dueño."""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from keygate.core.errors import QuotaExceeded
from keygate.db.models import PUBLIC_KEY_SOURCE, Clock, IssuanceSlot, KeyStatus, LicenseKey, OwnerPlan

logger = logging.getLogger(__name__)

PLAN_KEY_LIMITS = {
    "free": 10,
    "pro": 5000,
    "enterprise": 50000,
    "custom": 50000,
}


async def count_public_issuances(
    db: AsyncSession,
    script_id: str,
    requester_address: str,
    cooldown_hours: int,
    now: datetime,
) -> int:
    since = now - timedelta(hours=cooldown_hours)
    stmt = select(func.count(LicenseKey.id)).where(
        LicenseKey.script_id == script_id,
        LicenseKey.source == PUBLIC_KEY_SOURCE,
        LicenseKey.requester_address == requester_address,
        LicenseKey.created_at > since,
    )
    return (await db.execute(stmt)).scalar_one()


async def check_issuance_allowed(
    db: AsyncSession,
    script_id: str,
    requester_address: str,
    cooldown_hours: int,
    max_per_address: int,
    now: datetime,
) -> bool:
    """False cuando la IP ya obtuvo ``max_per_address`` keys dentro de la ventana."""
    issued = await count_public_issuances(db, script_id, requester_address, cooldown_hours, now)
    return issued < max_per_address


async def reserve_issuance_slot(
    db: AsyncSession, script_id: str, requester_address: str, now: datetime
) -> None:
    """Toma el bloqueo de escritura de (script, IP) dentro de la transacción de emisión.

    Se llama antes de ``check_issuance_allowed``: dos emisiones simultáneas desde
    la misma IP quedan en serie y la segunda recuenta ya con la key de la primera.
    En SQLite el UPDATE toma el lock de escritura aunque no toque filas; en
    PostgreSQL bloquea la fila, y si aún no existe el INSERT concurrente falla
    con ``IntegrityError`` y el llamador reintenta.
    """
    result = await db.execute(
        update(IssuanceSlot)
        .where(
            IssuanceSlot.script_id == script_id,
            IssuanceSlot.requester_address == requester_address,
        )
        .values(issued_count=IssuanceSlot.issued_count + 1, last_issued_at=now)
    )
    if result.rowcount == 0:
        db.add(
            IssuanceSlot(
                script_id=script_id,
                requester_address=requester_address,
                issued_count=1,
                last_issued_at=now,
            )
        )
        await db.flush()


class OwnerQuota(ABC):
    """Cupo de keys del plan del dueño; lanza ``QuotaExceeded`` si no alcanza."""

    @abstractmethod
    async def verify_key_quota(self, owner_id: str, requested: int) -> None: ...


class PlanKeyQuota(OwnerQuota):
    """Cuenta las keys válidas del dueño (unused/active y sin caducar) contra su plan."""

    def __init__(self, sessionmaker: async_sessionmaker, clock: Clock) -> None:
        self._sessionmaker = sessionmaker
        self._clock = clock

    async def maximum_keys(self, db: AsyncSession, owner_id: str) -> int:
        plan = await db.get(OwnerPlan, owner_id)
        if plan is None:
            return PLAN_KEY_LIMITS["free"]
        if plan.maximum_keys is not None:
            return plan.maximum_keys
        return PLAN_KEY_LIMITS.get(plan.plan_type, PLAN_KEY_LIMITS["free"])

    async def verify_key_quota(self, owner_id: str, requested: int) -> None:
        now = self._clock()
        async with self._sessionmaker() as db:
            maximum = await self.maximum_keys(db, owner_id)
            stmt = select(func.count(LicenseKey.id)).where(
                LicenseKey.owner_id == owner_id,
                LicenseKey.status.in_([KeyStatus.UNUSED.value, KeyStatus.ACTIVE.value]),
                or_(LicenseKey.expires_at.is_(None), LicenseKey.expires_at > now),
            )
            valid_keys = (await db.execute(stmt)).scalar_one()

        if valid_keys + requested > maximum:
            logger.info("Owner %s key quota reached (%s/%s)", owner_id, valid_keys, maximum)
            raise QuotaExceeded()
