# keygate/services/catalog.py
"""Consulta de scripts públicos y configuración Get Key de su dueño."""
from __future__ import annotations

from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from keygate.db.models import KeySettings, Script


@dataclass(frozen=True)
class OwnerGetKeyConfig:
    getkey_enabled: bool = False
    checkpoint_count: int | None = 2
    ad_links: list[str] = field(default_factory=list)
    checkpoint_timer_seconds: int | None = 10
    captcha_enabled: bool = False
    key_duration_hours: int | None = 24
    max_keys_per_ip: int | None = 1
    cooldown_hours: int | None = 24

    @classmethod
    def from_row(cls, row: KeySettings | None) -> "OwnerGetKeyConfig":
        if row is None:
            return cls()
        return cls(
            getkey_enabled=bool(row.getkey_enabled),
            checkpoint_count=row.checkpoint_count,
            ad_links=list(row.ad_links or []),
            checkpoint_timer_seconds=row.checkpoint_timer_seconds,
            captcha_enabled=bool(row.captcha_enabled),
            key_duration_hours=row.key_duration_hours,
            max_keys_per_ip=row.max_keys_per_ip,
            cooldown_hours=row.cooldown_hours,
        )

    # Los valores vacíos o cero caen al default, igual que en el panel del dueño
    @property
    def effective_cooldown_hours(self) -> int:
        return self.cooldown_hours or 24

    @property
    def effective_max_keys_per_ip(self) -> int:
        return self.max_keys_per_ip or 1

    @property
    def effective_key_duration_hours(self) -> int:
        return self.key_duration_hours or 24

    @property
    def effective_timer_seconds(self) -> int:
        return self.checkpoint_timer_seconds or 10


@dataclass(frozen=True)
class CheckpointPlan:
    links: list[str]
    required: int


def derive_checkpoint_plan(config: OwnerGetKeyConfig, platform_link: str) -> CheckpointPlan:
    """Enlaces ordenados y número de checkpoints exigidos.

    El enlace de la plataforma va siempre en la posición 0 y siempre se exige:
    el mínimo efectivo es 1 aunque el dueño configure 0 checkpoints.
    """
    links = [link for link in config.ad_links if link]
    if platform_link not in links:
        links.insert(0, platform_link)

    wanted = max(config.checkpoint_count or 1, 1)
    return CheckpointPlan(links=links, required=min(wanted, len(links)))


@dataclass(frozen=True)
class PublicScript:
    id: str
    slug: str
    title: str
    owner_id: str
    config: OwnerGetKeyConfig
    plan: CheckpointPlan

    def to_public_dict(self) -> dict:
        return {
            "id": self.id,
            "slug": self.slug,
            "title": self.title,
            "ownerId": self.owner_id,
            "adLinks": self.plan.links,
            "checkpointsRequired": self.plan.required,
            "checkpointTimerSeconds": self.config.effective_timer_seconds,
            "captchaEnabled": self.config.captcha_enabled,
            "keyDurationHours": self.config.effective_key_duration_hours,
        }


async def _load(db: AsyncSession, condition, platform_link: str) -> PublicScript | None:
    stmt = (
        select(Script, KeySettings)
        .outerjoin(KeySettings, KeySettings.user_id == Script.owner_id)
        .where(condition, Script.status == "published", Script.deleted_at.is_(None))
    )
    row = (await db.execute(stmt)).first()
    if row is None:
        return None

    script, key_settings = row
    config = OwnerGetKeyConfig.from_row(key_settings)
    if not config.getkey_enabled:
        return None

    return PublicScript(
        id=script.id,
        slug=script.slug,
        title=script.title,
        owner_id=script.owner_id,
        config=config,
        plan=derive_checkpoint_plan(config, platform_link),
    )


async def get_public_script(db: AsyncSession, slug: str, platform_link: str) -> PublicScript | None:
    """None si el script no está publicado, está borrado o el dueño no tiene Get Key activo."""
    return await _load(db, Script.slug == slug, platform_link)


async def get_public_script_by_id(
    db: AsyncSession, script_id: str, platform_link: str
) -> PublicScript | None:
    return await _load(db, Script.id == script_id, platform_link)
