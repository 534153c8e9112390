# keygate/services/challenge.py
"""Verificación anti-bot contra Cloudflare Turnstile.

Falla siempre cerrado: error de red, timeout, HTTP no-2xx o respuesta ilegible
cuentan como "no superado". No reintenta; el cliente vuelve a pedir un token.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

import httpx

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChallengeVerdict:
    passed: bool
    error_codes: list[str] = field(default_factory=list)
    # True si ni siquiera obtuvimos un veredicto del servicio
    upstream_error: bool = False


class ChallengeVerifier(ABC):
    @abstractmethod
    async def verify(self, proof: str, requester_address: str) -> ChallengeVerdict: ...


class TurnstileVerifier(ChallengeVerifier):
    def __init__(self, secret_key: str, verify_url: str, timeout_seconds: float = 5.0) -> None:
        if not secret_key:
            raise ValueError("TURNSTILE_SECRET_KEY is not set")
        self._secret_key = secret_key
        self._verify_url = verify_url
        self._timeout = timeout_seconds

    def _make_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout)

    async def verify(self, proof: str, requester_address: str) -> ChallengeVerdict:
        form = {"secret": self._secret_key, "response": proof, "remoteip": requester_address}
        try:
            async with self._make_client() as client:
                resp = await client.post(self._verify_url, data=form)
            resp.raise_for_status()
            body = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Turnstile request failed for %s: %s", requester_address, e)
            return ChallengeVerdict(passed=False, upstream_error=True)

        if not isinstance(body, dict):
            logger.error("Turnstile returned an unexpected body for %s", requester_address)
            return ChallengeVerdict(passed=False, upstream_error=True)

        codes = [str(c) for c in body.get("error-codes") or []]
        if body.get("success") is not True:
            logger.warning("Turnstile verification failed for %s: %s", requester_address, codes)
            return ChallengeVerdict(passed=False, error_codes=codes)

        logger.info("Turnstile verification passed for %s", requester_address)
        return ChallengeVerdict(passed=True, error_codes=codes)
