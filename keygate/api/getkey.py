# keygate/api/getkey.py
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from keygate.api.deps import get_device_id, get_getkey_service, get_requester_address, ok
from keygate.services.sessions import GetKeyService

router = APIRouter()


class StartSessionInput(BaseModel):
    scriptSlug: str = Field(min_length=1)


class CheckpointInput(BaseModel):
    sessionToken: str = Field(min_length=1)
    checkpointIndex: int


class CaptchaInput(BaseModel):
    sessionToken: str = Field(min_length=1)
    turnstileToken: str = Field(min_length=1)


class GetKeyInput(BaseModel):
    sessionToken: str = Field(min_length=1)


@router.get("/script/{slug}")
async def public_script_info(slug: str, service: GetKeyService = Depends(get_getkey_service)):
    script = await service.script_info(slug)
    return ok(script.to_public_dict())


@router.post("/start-session", status_code=201)
async def start_session(
    body: StartSessionInput,
    ip: str = Depends(get_requester_address),
    device_id: str | None = Depends(get_device_id),
    service: GetKeyService = Depends(get_getkey_service),
):
    started = await service.start(body.scriptSlug, ip, device_id)
    return ok({
        "token": started.token,
        "script": started.script.to_public_dict(),
        "adLinks": started.script.plan.links,
        "checkpointsRequired": started.checkpoints_required,
        "checkpointTimerSeconds": started.script.config.effective_timer_seconds,
        "captchaEnabled": started.captcha_enabled,
        "expiresAt": started.expires_at,
    })


@router.post("/complete-checkpoint")
async def complete_checkpoint(
    body: CheckpointInput,
    ip: str = Depends(get_requester_address),
    device_id: str | None = Depends(get_device_id),
    service: GetKeyService = Depends(get_getkey_service),
):
    progress = await service.complete_checkpoint(body.sessionToken, body.checkpointIndex, ip, device_id)
    data = {"completed": progress.completed, "required": progress.required}
    if progress.already_completed:
        data["message"] = "Already completed"
    return ok(data)


@router.post("/verify-captcha")
async def verify_captcha(
    body: CaptchaInput,
    ip: str = Depends(get_requester_address),
    device_id: str | None = Depends(get_device_id),
    service: GetKeyService = Depends(get_getkey_service),
):
    passed = await service.verify_challenge(body.sessionToken, body.turnstileToken, ip, device_id)
    return ok({"captchaPassed": passed})


# El token va en base64 estándar y puede contener "/"
@router.get("/session/{token:path}")
async def session_info(
    token: str,
    device_id: str | None = Depends(get_device_id),
    service: GetKeyService = Depends(get_getkey_service),
):
    view = await service.get_status(token, device_id)
    return ok({
        "status": view.status,
        "checkpointsCompleted": len(view.checkpoints_completed),
        "completedCheckpoints": view.checkpoints_completed,
        "checkpointsRequired": view.checkpoints_required,
        "captchaRequired": view.captcha_required,
        "captchaPassed": view.captcha_passed,
        "scriptSlug": view.script_slug,
        "expiresAt": view.expires_at,
        "hasKey": view.has_key,
    })


@router.post("/getkey", status_code=201)
async def generate_public_key(
    body: GetKeyInput,
    ip: str = Depends(get_requester_address),
    device_id: str | None = Depends(get_device_id),
    service: GetKeyService = Depends(get_getkey_service),
):
    issued = await service.issue(body.sessionToken, ip, device_id)
    return ok({"keyValue": issued.key_value, "expiresAt": issued.expires_at})
