# keygate/api/keys.py
"""Rutas del dueño: keys emitidas y ajustes Get Key.

No autentican. La identidad del dueño es la cabecera ``X-User-Id``, que solo
se acepta con ``TRUST_OWNER_HEADER=true``: el servicio debe estar detrás de un
gateway que autentique y fije esa cabecera, descartando la que mande el cliente.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import delete, select, update

from keygate.api.deps import get_owner_id, ok
from keygate.db.models import KeyDevice, KeySettings, KeyStatus, LicenseKey, as_utc, utcnow
from keygate.db.session import SessionLocal

logger = logging.getLogger(__name__)

router = APIRouter()


def _key_dict(r: LicenseKey) -> dict:
    expires_at = as_utc(r.expires_at)
    return {
        "keyValue": r.key_value,
        "scriptId": r.script_id,
        "type": r.type,
        "status": r.status,
        "maxDevices": r.max_devices,
        "expiresAt": expires_at.isoformat() if expires_at else None,
        "note": r.note,
        "createdAt": as_utc(r.created_at).isoformat(),
    }


def _settings_dict(ks: KeySettings) -> dict:
    return {
        "getkeyEnabled": ks.getkey_enabled,
        "checkpointCount": ks.checkpoint_count,
        "adLinks": list(ks.ad_links or []),
        "checkpointTimerSeconds": ks.checkpoint_timer_seconds,
        "captchaEnabled": ks.captcha_enabled,
        "keyDurationHours": ks.key_duration_hours,
        "maxKeysPerIp": ks.max_keys_per_ip,
        "cooldownHours": ks.cooldown_hours,
    }


async def _expire_overdue_keys(s, owner_id: str) -> None:
    # Caducidad perezosa: se marca al leer, no hay barrido periódico
    await s.execute(
        update(LicenseKey)
        .where(
            LicenseKey.owner_id == owner_id,
            LicenseKey.expires_at < utcnow(),
            LicenseKey.status.in_([KeyStatus.ACTIVE.value, KeyStatus.UNUSED.value]),
        )
        .values(status=KeyStatus.EXPIRED.value)
    )
    await s.commit()


async def _get_owned_key(s, owner_id: str, key_value: str) -> LicenseKey:
    res = await s.execute(
        select(LicenseKey).where(LicenseKey.key_value == key_value, LicenseKey.owner_id == owner_id)
    )
    key = res.scalar_one_or_none()
    if not key:
        raise HTTPException(status_code=404, detail="key not found")
    return key


class GetkeySettingsInput(BaseModel):
    getkeyEnabled: bool | None = None
    checkpointCount: int | None = Field(None, ge=0, le=20)
    adLinks: list[str] | None = None
    checkpointTimerSeconds: int | None = Field(None, ge=0)
    captchaEnabled: bool | None = None
    keyDurationHours: int | None = Field(None, ge=1)
    maxKeysPerIp: int | None = Field(None, ge=1)
    cooldownHours: int | None = Field(None, ge=1)


_SETTINGS_FIELDS = {
    "getkeyEnabled": "getkey_enabled",
    "checkpointCount": "checkpoint_count",
    "adLinks": "ad_links",
    "checkpointTimerSeconds": "checkpoint_timer_seconds",
    "captchaEnabled": "captcha_enabled",
    "keyDurationHours": "key_duration_hours",
    "maxKeysPerIp": "max_keys_per_ip",
    "cooldownHours": "cooldown_hours",
}


async def _settings_row(s, owner_id: str) -> KeySettings:
    ks = await s.get(KeySettings, owner_id)
    if ks is None:
        ks = KeySettings(user_id=owner_id)
        s.add(ks)
        await s.flush()
    return ks


@router.get("/getkey-settings")
async def get_getkey_settings(owner_id: str = Depends(get_owner_id)):
    async with SessionLocal() as s:
        ks = await _settings_row(s, owner_id)
        await s.commit()
        return ok(_settings_dict(ks))


@router.put("/getkey-settings")
async def update_getkey_settings(body: GetkeySettingsInput, owner_id: str = Depends(get_owner_id)):
    async with SessionLocal() as s:
        ks = await _settings_row(s, owner_id)
        # Actualización parcial: solo los campos enviados
        for field, column in _SETTINGS_FIELDS.items():
            value = getattr(body, field)
            if value is not None:
                setattr(ks, column, value)
        await s.commit()
    logger.info("User %s updated Get Key settings", owner_id)
    return ok(_settings_dict(ks))


@router.get("")
async def list_keys(
    owner_id: str = Depends(get_owner_id),
    status: str | None = Query(None),
    scriptId: str | None = Query(None),
):
    async with SessionLocal() as s:
        await _expire_overdue_keys(s, owner_id)
        stmt = select(LicenseKey).where(LicenseKey.owner_id == owner_id)
        if status:
            stmt = stmt.where(LicenseKey.status == status)
        if scriptId:
            stmt = stmt.where(LicenseKey.script_id == scriptId)
        res = await s.execute(stmt.order_by(LicenseKey.created_at.desc()))
        return ok([_key_dict(r) for r in res.scalars().all()])


@router.get("/{key_value}")
async def key_detail(key_value: str, owner_id: str = Depends(get_owner_id)):
    async with SessionLocal() as s:
        await _expire_overdue_keys(s, owner_id)
        key = await _get_owned_key(s, owner_id, key_value)
        return ok(_key_dict(key))


@router.post("/{key_value}/revoke")
async def revoke_key(key_value: str, owner_id: str = Depends(get_owner_id)):
    async with SessionLocal() as s:
        key = await _get_owned_key(s, owner_id, key_value)
        key.status = KeyStatus.REVOKED.value
        await s.commit()
    logger.info("User %s revoked key %s", owner_id, key_value)
    return ok({"keyValue": key_value, "status": KeyStatus.REVOKED.value})


@router.delete("/{key_value}")
async def delete_key(key_value: str, owner_id: str = Depends(get_owner_id)):
    async with SessionLocal() as s:
        key = await _get_owned_key(s, owner_id, key_value)
        await s.execute(delete(KeyDevice).where(KeyDevice.key_id == key.id))
        await s.delete(key)
        await s.commit()
    logger.info("User %s deleted key %s", owner_id, key_value)
    return ok({"keyValue": key_value, "deleted": True})
