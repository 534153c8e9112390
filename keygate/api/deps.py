# keygate/api/deps.py
from functools import lru_cache
from typing import Any

from fastapi import Header, HTTPException, Request

from keygate.core.config import settings
from keygate.core.crypto import make_token_codec
from keygate.db.models import utcnow
from keygate.db.session import SessionLocal
from keygate.services.challenge import TurnstileVerifier
from keygate.services.issuer import CredentialIssuer
from keygate.services.limits import PlanKeyQuota
from keygate.services.sessions import GetKeyService


def ok(data: Any) -> dict:
    return {"success": True, "data": data}


def get_requester_address(request: Request) -> str:
    if settings.trust_proxy_headers:
        cf_ip = request.headers.get("cf-connecting-ip")
        if cf_ip:
            return cf_ip.strip()
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return first
    return request.client.host if request.client else "unknown"


def get_device_id(x_device_id: str | None = Header(None)) -> str | None:
    return x_device_id or None


def get_owner_id(x_user_id: str | None = Header(None)) -> str:
    # Sin gateway delante que fije la cabecera, las rutas de dueño quedan cerradas
    if not settings.trust_owner_header:
        raise HTTPException(status_code=403, detail="Owner endpoints are disabled (TRUST_OWNER_HEADER is off)")
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id")
    return x_user_id


@lru_cache
def get_getkey_service() -> GetKeyService:
    return GetKeyService(
        sessionmaker=SessionLocal,
        codec=make_token_codec(settings.session_token_format, settings.session_secret),
        verifier=TurnstileVerifier(
            settings.turnstile_secret_key,
            settings.turnstile_verify_url,
            settings.turnstile_timeout_seconds,
        ),
        owner_quota=PlanKeyQuota(SessionLocal, utcnow),
        issuer=CredentialIssuer(
            key_prefix=settings.key_prefix,
            max_hours=settings.max_public_key_hours,
            display_minutes=settings.completed_display_minutes,
        ),
        platform_link=settings.platform_ad_link,
        session_ttl_minutes=settings.session_ttl_minutes,
    )
