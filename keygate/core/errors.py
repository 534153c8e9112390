# keygate/core/errors.py
"""Errores del flujo Get Key.

Cada error lleva su ``kind`` (el nombre que ve el cliente en ``error``) y el
código HTTP con el que se devuelve. Todos son terminales para la llamada en
curso: el núcleo nunca reintenta por su cuenta.
"""
from __future__ import annotations

from typing import Any


class GetKeyError(Exception):
    kind: str = "ServerError"
    status_code: int = 500
    default_message: str = "Unexpected error"

    def __init__(self, message: str | None = None, **extra: Any) -> None:
        self.message = message or self.default_message
        self.extra = extra
        super().__init__(self.message)

    def to_payload(self) -> dict[str, Any]:
        return {"error": self.kind, "message": self.message, **self.extra}

    def __str__(self) -> str:
        return f"{self.kind}: {self.message}"


class InvalidToken(GetKeyError):
    kind = "InvalidToken"
    status_code = 401
    default_message = "Invalid session token"


class DeviceMismatch(GetKeyError):
    kind = "DeviceMismatch"
    status_code = 403
    default_message = "Browser mismatch. Looks like you copied this link from another browser."


class IpMismatch(GetKeyError):
    kind = "IpMismatch"
    status_code = 403
    default_message = "IP mismatch for this session"


class Expired(GetKeyError):
    kind = "Expired"
    status_code = 410
    default_message = "Session expired"


class NotFound(GetKeyError):
    kind = "NotFound"
    status_code = 404
    default_message = "Session not found or already completed"


class InvalidIndex(GetKeyError):
    kind = "InvalidIndex"
    status_code = 400
    default_message = "Invalid checkpoint index"


class OutOfOrder(GetKeyError):
    kind = "OutOfOrder"
    status_code = 409
    default_message = "Must complete previous checkpoints first"


class ChallengeFailed(GetKeyError):
    kind = "ChallengeFailed"
    status_code = 400
    default_message = "Captcha verification failed"


class RateLimited(GetKeyError):
    kind = "RateLimited"
    status_code = 429

    def __init__(self, cooldown_hours: int) -> None:
        super().__init__(
            f"Rate limit exceeded. Try again in {cooldown_hours} hours.",
            cooldownHours=cooldown_hours,
        )
        self.cooldown_hours = cooldown_hours


class QuotaExceeded(GetKeyError):
    kind = "QuotaExceeded"
    status_code = 403
    default_message = "Key limit reached. Please contact the script creator."


class Incomplete(GetKeyError):
    kind = "Incomplete"
    status_code = 409
    default_message = "Not all checkpoints have been completed"


class UpstreamVerifierError(GetKeyError):
    kind = "UpstreamVerifierError"
    status_code = 502
    default_message = "Failed to contact the verification service"


class SessionConflict(GetKeyError):
    """La sesión cambió entre la lectura y el commit y se agotaron los reintentos."""

    kind = "Conflict"
    status_code = 409
    default_message = "Session busy, retry"
