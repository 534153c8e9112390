# keygate/core/crypto.py
"""Tokens de sesión firmados.

El token es un sobre firmado con HMAC-SHA256 sobre la referencia a la sesión.
``verify`` nunca lanza: cualquier fallo (formato, base64, JSON, firma) devuelve
``None`` y el llamador lo trata siempre como "invalid session token".
"""
from __future__ import annotations

import base64
import binascii
import json
import secrets
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass

import jwt
from jwt import InvalidTokenError
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac

TOKEN_DELIMITER = "."


@dataclass(frozen=True)
class SessionClaims:
    session_id: str
    script_id: str
    requester_address: str
    device_id: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "SessionClaims":
        device_id = data.get("device_id")
        if device_id is not None and not isinstance(device_id, str):
            raise ValueError("device_id must be a string")
        values = {k: data[k] for k in ("session_id", "script_id", "requester_address")}
        if not all(isinstance(v, str) and v for v in values.values()):
            raise ValueError("claims must be non-empty strings")
        return cls(device_id=device_id, **values)


class TokenCodec(ABC):
    """Sobre firmado intercambiable: ``sign(claims) -> token``, ``verify(token) -> claims | None``."""

    @abstractmethod
    def sign(self, claims: SessionClaims) -> str: ...

    @abstractmethod
    def verify(self, token: str) -> SessionClaims | None: ...


def _serialize(claims: SessionClaims) -> bytes:
    # Determinista: mismas claims -> mismos bytes -> misma firma
    return json.dumps(claims.to_dict(), sort_keys=True, separators=(",", ":")).encode("utf-8")


class HmacTokenCodec(TokenCodec):
    """``base64(payload) + "." + hex(HMAC-SHA256(payload))``."""

    def __init__(self, secret: str | bytes) -> None:
        if not secret:
            raise ValueError("session secret must not be empty")
        self._key = secret.encode("utf-8") if isinstance(secret, str) else secret

    def _mac(self) -> hmac.HMAC:
        return hmac.HMAC(self._key, hashes.SHA256())

    def sign(self, claims: SessionClaims) -> str:
        data = _serialize(claims)
        h = self._mac()
        h.update(data)
        tag = h.finalize().hex()
        return f"{base64.b64encode(data).decode('ascii')}{TOKEN_DELIMITER}{tag}"

    def verify(self, token: str) -> SessionClaims | None:
        try:
            b64_data, tag_hex = token.split(TOKEN_DELIMITER)
            data = base64.b64decode(b64_data, validate=True)
            h = self._mac()
            h.update(data)
            h.verify(bytes.fromhex(tag_hex))  # comparación en tiempo constante
            return SessionClaims.from_dict(json.loads(data))
        except (InvalidSignature, binascii.Error, ValueError, KeyError, TypeError, AttributeError):
            # json.JSONDecodeError y UnicodeDecodeError son ValueError
            return None


class JwtTokenCodec(TokenCodec):
    """Mismo contrato con un formato estándar (JWT HS256)."""

    algorithm = "HS256"

    def __init__(self, secret: str) -> None:
        if not secret:
            raise ValueError("session secret must not be empty")
        self._secret = secret

    def sign(self, claims: SessionClaims) -> str:
        return jwt.encode(claims.to_dict(), self._secret, algorithm=self.algorithm)

    def verify(self, token: str) -> SessionClaims | None:
        try:
            data = jwt.decode(token, self._secret, algorithms=[self.algorithm])
            return SessionClaims.from_dict(data)
        except (InvalidTokenError, ValueError, KeyError, TypeError):
            return None


def make_token_codec(token_format: str, secret: str) -> TokenCodec:
    if token_format == "hmac":
        return HmacTokenCodec(secret)
    if token_format == "jwt":
        return JwtTokenCodec(secret)
    raise ValueError(f"unknown session token format: {token_format!r}")


def generate_key_value(prefix: str) -> str:
    """Valor opaco de la key: prefijo + 24 hex aleatorios."""
    return f"{prefix}{secrets.token_hex(12)}"
