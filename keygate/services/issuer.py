# keygate/services/issuer.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from keygate.core.crypto import generate_key_value
from keygate.core.errors import SessionConflict
from keygate.db.models import (
    PUBLIC_KEY_SOURCE,
    GetKeySession,
    KeyStatus,
    KeyType,
    LicenseKey,
    SessionStatus,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IssuedKey:
    key_value: str
    expires_at: datetime | None


class CredentialIssuer:
    def __init__(self, key_prefix: str, max_hours: int, display_minutes: int) -> None:
        self.key_prefix = key_prefix
        self.max_hours = max_hours
        self.display_minutes = display_minutes

    async def issue(
        self,
        db: AsyncSession,
        session: GetKeySession,
        owner_id: str,
        duration_hours: int,
        requester_address: str,
        now: datetime,
    ) -> IssuedKey:
        """Inserta la key y completa la sesión en la misma transacción.

        ``session`` debe estar cargada en ``db``. Si el commit pierde la carrera
        (versión de la sesión cambiada) se hace rollback, no queda key huérfana
        y se lanza ``SessionConflict``.
        """
        session_id = session.id
        key_value = generate_key_value(self.key_prefix)
        expires_at = now + timedelta(hours=min(duration_hours, self.max_hours))

        db.add(
            LicenseKey(
                key_value=key_value,
                script_id=session.script_id,
                owner_id=owner_id,
                type=KeyType.TIMED.value,
                status=KeyStatus.ACTIVE.value,
                max_devices=1,
                expires_at=expires_at,
                note=f"{PUBLIC_KEY_SOURCE}:{requester_address}",
                source=PUBLIC_KEY_SOURCE,
                requester_address=requester_address,
                created_at=now,
            )
        )
        # La sesión queda visible unos minutos para mostrar la key y luego se purga
        session.status = SessionStatus.COMPLETED.value
        session.key_value = key_value
        session.expires_at = now + timedelta(minutes=self.display_minutes)

        try:
            await db.commit()
        except StaleDataError as e:
            await db.rollback()
            logger.info("Stale version on session %s", session_id)
            raise SessionConflict() from e
        except Exception:
            await db.rollback()
            raise

        return IssuedKey(key_value=key_value, expires_at=expires_at)
