# keygate/api/verifier.py
from fastapi import APIRouter
from pydantic import BaseModel
from sqlalchemy import func, select

from keygate.db.models import KeyDevice, KeyStatus, LicenseKey, Script, as_utc, utcnow
from keygate.db.session import SessionLocal

router = APIRouter()


class ValidateInput(BaseModel):
    keyValue: str
    scriptId: str | None = None
    hwid: str | None = None


@router.post("/validate")
async def validate_key(body: ValidateInput):
    now = utcnow()
    async with SessionLocal() as s:
        res = await s.execute(
            select(LicenseKey, Script.title)
            .join(Script, LicenseKey.script_id == Script.id)
            .where(LicenseKey.key_value == body.keyValue)
        )
        row = res.first()
        if not row:
            return {"valid": False, "message": "Invalid key. Key does not exist."}
        key, script_title = row

        if body.scriptId and key.script_id != body.scriptId:
            return {"valid": False, "message": "Key does not belong to this script."}
        if key.status == KeyStatus.REVOKED:
            return {"valid": False, "message": "Key has been revoked by the owner."}
        if key.status == KeyStatus.EXPIRED:
            return {"valid": False, "message": "Key has expired."}

        # Key temporal vencida: se marca aquí mismo
        expires_at = as_utc(key.expires_at)
        if expires_at and expires_at < now:
            key.status = KeyStatus.EXPIRED.value
            await s.commit()
            return {"valid": False, "message": "Key has expired."}

        if body.hwid:
            device = (
                await s.execute(
                    select(KeyDevice).where(KeyDevice.key_id == key.id, KeyDevice.hwid == body.hwid)
                )
            ).scalar_one_or_none()
            if device:
                device.last_seen_at = now
            else:
                bound = (
                    await s.execute(select(func.count(KeyDevice.id)).where(KeyDevice.key_id == key.id))
                ).scalar_one()
                if bound >= key.max_devices:
                    return {
                        "valid": False,
                        "message": f"Device limit reached ({key.max_devices}). "
                                   f"This key is already bound to {bound} device(s).",
                    }
                s.add(KeyDevice(key_id=key.id, hwid=body.hwid, created_at=now, last_seen_at=now))

        if key.status == KeyStatus.UNUSED:
            key.status = KeyStatus.ACTIVE.value
        key.last_activity_at = now
        await s.commit()

        return {
            "valid": True,
            "message": "Key is valid.",
            "key": {
                "keyValue": key.key_value,
                "type": key.type,
                "status": key.status,
                "maxDevices": key.max_devices,
                "expiresAt": expires_at.isoformat() if expires_at else None,
                "scriptTitle": script_title,
            },
        }
