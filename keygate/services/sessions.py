# keygate/services/sessions.py
"""Máquina de estados de las sesiones Get Key.

    pending --(getkey)--> completed
    pending --(deadline)--> expired

No hay objeto de sesión en memoria: cada llamada lee la fila, valida y la
actualiza de forma condicional (columna ``version``). La caducidad se detecta
de forma perezosa al acceder; no hay temporizadores.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from keygate.core.crypto import SessionClaims, TokenCodec
from keygate.core.errors import (
    ChallengeFailed,
    DeviceMismatch,
    Expired,
    Incomplete,
    InvalidIndex,
    InvalidToken,
    IpMismatch,
    NotFound,
    OutOfOrder,
    RateLimited,
    SessionConflict,
    UpstreamVerifierError,
)
from keygate.db.models import Clock, GetKeySession, LicenseKey, Script, SessionStatus, as_utc, utcnow
from keygate.services.catalog import PublicScript, get_public_script, get_public_script_by_id
from keygate.services.challenge import ChallengeVerifier
from keygate.services.issuer import CredentialIssuer, IssuedKey
from keygate.services.limits import OwnerQuota, check_issuance_allowed, reserve_issuance_slot

logger = logging.getLogger(__name__)

MAX_CONFLICT_RETRIES = 3


@dataclass(frozen=True)
class StartedSession:
    token: str
    script: PublicScript
    checkpoints_required: int
    captcha_enabled: bool
    expires_at: datetime


@dataclass(frozen=True)
class CheckpointProgress:
    completed: int
    required: int
    already_completed: bool = False


@dataclass(frozen=True)
class SessionView:
    status: str
    checkpoints_completed: list[int]
    checkpoints_required: int
    captcha_required: bool
    captcha_passed: bool
    script_slug: str | None
    expires_at: datetime
    has_key: bool


class GetKeyService:
    def __init__(
        self,
        sessionmaker: async_sessionmaker,
        codec: TokenCodec,
        verifier: ChallengeVerifier,
        owner_quota: OwnerQuota,
        issuer: CredentialIssuer,
        platform_link: str,
        session_ttl_minutes: int = 30,
        clock: Clock = utcnow,
    ) -> None:
        self._sessionmaker = sessionmaker
        self._codec = codec
        self._verifier = verifier
        self._owner_quota = owner_quota
        self._issuer = issuer
        self._platform_link = platform_link
        self._ttl = timedelta(minutes=session_ttl_minutes)
        self._clock = clock
        self._background: set[asyncio.Task] = set()

    # ------------------------------------------------------------------ #
    # Guardas comunes
    # ------------------------------------------------------------------ #
    def _claims(self, token: str, device_id: str | None) -> SessionClaims:
        claims = self._codec.verify(token) if token else None
        if claims is None:
            logger.warning("Rejected invalid or forged session token")
            raise InvalidToken()
        # Si el token lleva huella de navegador, el llamador debe traer la misma
        if claims.device_id and claims.device_id != device_id:
            logger.warning("Device mismatch for session %s", claims.session_id)
            raise DeviceMismatch()
        return claims

    async def _load(self, db: AsyncSession, claims: SessionClaims, token: str) -> GetKeySession:
        stmt = select(GetKeySession).where(
            GetKeySession.id == claims.session_id,
            GetKeySession.token == token,
        )
        row = (await db.execute(stmt)).scalar_one_or_none()
        if row is None:
            raise NotFound("Session not found")
        return row

    async def _expire_if_overdue(self, db: AsyncSession, row: GetKeySession, now: datetime) -> bool:
        if row.status == SessionStatus.EXPIRED:
            return True
        if row.status != SessionStatus.PENDING or now <= as_utc(row.expires_at):
            return False

        row.status = SessionStatus.EXPIRED.value
        try:
            await db.commit()
        except StaleDataError:
            # Otra petición tocó la fila; su estado manda
            await db.rollback()
            await db.refresh(row)
            return row.status != SessionStatus.COMPLETED
        logger.info("Session %s expired", row.id)
        return True

    async def _load_pending(
        self, db: AsyncSession, claims: SessionClaims, token: str, requester_address: str
    ) -> GetKeySession:
        row = await self._load(db, claims, token)
        if row.status == SessionStatus.COMPLETED:
            raise NotFound()
        if row.ip_address != requester_address:
            raise IpMismatch()
        if await self._expire_if_overdue(db, row, self._clock()):
            raise Expired()
        return row

    async def _apply(
        self,
        claims: SessionClaims,
        token: str,
        requester_address: str,
        change: Callable[[GetKeySession], tuple[Any, bool]],
    ) -> Any:
        """Aplica ``change`` a la sesión pending; reintenta si pierde la carrera."""
        for _ in range(MAX_CONFLICT_RETRIES):
            async with self._sessionmaker() as db:
                row = await self._load_pending(db, claims, token, requester_address)
                result, modified = change(row)
                if not modified:
                    return result
                try:
                    await db.commit()
                except StaleDataError:
                    await db.rollback()
                    logger.info("Concurrent update on session %s, retrying", claims.session_id)
                    continue
                return result
        logger.warning("Gave up on contended session %s", claims.session_id)
        raise SessionConflict()

    # ------------------------------------------------------------------ #
    # Limpieza en segundo plano
    # ------------------------------------------------------------------ #
    def _schedule_cleanup(self) -> None:
        task = asyncio.create_task(self.purge_expired_sessions())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def purge_expired_sessions(self) -> int:
        """Borra sesiones vencidas. Nunca falla hacia el llamador."""
        try:
            async with self._sessionmaker() as db:
                result = await db.execute(
                    delete(GetKeySession).where(GetKeySession.expires_at < self._clock())
                )
                await db.commit()
                return result.rowcount or 0
        except Exception:
            logger.exception("Session cleanup error")
            return 0

    # ------------------------------------------------------------------ #
    # Operaciones
    # ------------------------------------------------------------------ #
    async def script_info(self, slug: str) -> PublicScript:
        async with self._sessionmaker() as db:
            script = await get_public_script(db, slug, self._platform_link)
        if script is None:
            raise NotFound("Script not found or Get Key not enabled")
        return script

    async def start(self, slug: str, requester_address: str, device_id: str | None) -> StartedSession:
        self._schedule_cleanup()
        now = self._clock()

        async with self._sessionmaker() as db:
            script = await get_public_script(db, slug, self._platform_link)
            if script is None:
                raise NotFound("Script not found or Get Key not enabled")

            config = script.config
            allowed = await check_issuance_allowed(
                db,
                script.id,
                requester_address,
                config.effective_cooldown_hours,
                config.effective_max_keys_per_ip,
                now,
            )
            if not allowed:
                raise RateLimited(config.effective_cooldown_hours)

            session_id = str(uuid.uuid4())
            token = self._codec.sign(
                SessionClaims(
                    session_id=session_id,
                    script_id=script.id,
                    requester_address=requester_address,
                    device_id=device_id or None,
                )
            )
            expires_at = now + self._ttl
            db.add(
                GetKeySession(
                    id=session_id,
                    token=token,
                    script_id=script.id,
                    ip_address=requester_address,
                    device_id=device_id or None,
                    checkpoints_required=script.plan.required,
                    checkpoints_completed=[],
                    captcha_required=config.captcha_enabled,
                    captcha_passed=False,
                    status=SessionStatus.PENDING.value,
                    created_at=now,
                    expires_at=expires_at,
                )
            )
            await db.commit()

        logger.info("Get Key session started for script %s from %s", slug, requester_address)
        return StartedSession(
            token=token,
            script=script,
            checkpoints_required=script.plan.required,
            captcha_enabled=config.captcha_enabled,
            expires_at=expires_at,
        )

    async def complete_checkpoint(
        self, token: str, index: int, requester_address: str, device_id: str | None
    ) -> CheckpointProgress:
        claims = self._claims(token, device_id)

        def change(row: GetKeySession) -> tuple[CheckpointProgress, bool]:
            if index < 0 or index >= row.checkpoints_required:
                raise InvalidIndex()
            completed = list(row.checkpoints_completed or [])
            if index in completed:
                return CheckpointProgress(len(completed), row.checkpoints_required, True), False
            if index > 0 and (index - 1) not in completed:
                raise OutOfOrder()
            completed.append(index)
            row.checkpoints_completed = completed
            return CheckpointProgress(len(completed), row.checkpoints_required), True

        return await self._apply(claims, token, requester_address, change)

    async def verify_challenge(
        self, token: str, proof: str, requester_address: str, device_id: str | None
    ) -> bool:
        claims = self._claims(token, device_id)

        async with self._sessionmaker() as db:
            row = await self._load_pending(db, claims, token, requester_address)
            if row.captcha_passed:
                return True

        # Sin transacción abierta durante la llamada externa
        verdict = await self._verifier.verify(proof, requester_address)
        if verdict.upstream_error:
            raise UpstreamVerifierError()
        if not verdict.passed:
            codes = ", ".join(verdict.error_codes) or "unknown"
            raise ChallengeFailed(f"Captcha verification failed: Bot detected ({codes})")

        def change(row: GetKeySession) -> tuple[bool, bool]:
            if row.captcha_passed:
                return True, False
            row.captcha_passed = True
            return True, True

        return await self._apply(claims, token, requester_address, change)

    async def get_status(self, token: str, device_id: str | None) -> SessionView:
        """Proyección para el polling del cliente. Sin control de IP."""
        claims = self._claims(token, device_id)

        async with self._sessionmaker() as db:
            row = await self._load(db, claims, token)
            await self._expire_if_overdue(db, row, self._clock())
            slug = await db.scalar(select(Script.slug).where(Script.id == row.script_id))
            return SessionView(
                status=row.status,
                checkpoints_completed=sorted(row.checkpoints_completed or []),
                checkpoints_required=row.checkpoints_required,
                captcha_required=row.captcha_required,
                captcha_passed=row.captcha_passed,
                script_slug=slug,
                expires_at=as_utc(row.expires_at),
                has_key=row.key_value is not None,
            )

    @staticmethod
    def _ensure_complete(row: GetKeySession) -> None:
        completed = set(row.checkpoints_completed or [])
        if not set(range(row.checkpoints_required)) <= completed:
            raise Incomplete()
        if row.captcha_required and not row.captcha_passed:
            raise Incomplete("Captcha verification required")

    @staticmethod
    async def _existing_key(db: AsyncSession, key_value: str) -> IssuedKey:
        key = (
            await db.execute(select(LicenseKey).where(LicenseKey.key_value == key_value))
        ).scalar_one_or_none()
        return IssuedKey(key_value=key_value, expires_at=as_utc(key.expires_at) if key else None)

    async def issue(self, token: str, requester_address: str, device_id: str | None) -> IssuedKey:
        claims = self._claims(token, device_id)

        for _ in range(MAX_CONFLICT_RETRIES):
            now = self._clock()
            async with self._sessionmaker() as db:
                row = await self._load(db, claims, token)
                if row.ip_address != requester_address:
                    raise IpMismatch()

                # Doble envío del "claim": devolver la misma key
                if row.status == SessionStatus.COMPLETED and row.key_value:
                    return await self._existing_key(db, row.key_value)
                if await self._expire_if_overdue(db, row, now):
                    raise Expired()
                self._ensure_complete(row)

                script = await get_public_script_by_id(db, row.script_id, self._platform_link)
                if script is None:
                    raise NotFound("Script not found or Get Key not enabled")

                # Bloqueo de (script, IP) y recuento en la misma transacción que inserta la key
                try:
                    await reserve_issuance_slot(db, script.id, requester_address, now)
                except IntegrityError:
                    await db.rollback()
                    logger.info("Issuance slot race on session %s, retrying", claims.session_id)
                    continue
                config = script.config
                allowed = await check_issuance_allowed(
                    db,
                    script.id,
                    requester_address,
                    config.effective_cooldown_hours,
                    config.effective_max_keys_per_ip,
                    now,
                )
                if not allowed:
                    raise RateLimited(config.effective_cooldown_hours)
                await self._owner_quota.verify_key_quota(script.owner_id, 1)

                try:
                    issued = await self._issuer.issue(
                        db,
                        row,
                        owner_id=script.owner_id,
                        duration_hours=config.effective_key_duration_hours,
                        requester_address=requester_address,
                        now=now,
                    )
                except SessionConflict:
                    logger.info("Issuance race on session %s, re-reading", claims.session_id)
                    continue

            logger.info(
                "Public key generated for script %s from IP %s via session", script.slug, requester_address
            )
            return issued

        logger.warning("Gave up on contended session %s", claims.session_id)
        raise SessionConflict()
