# tests/conftest.py
import asyncio
import os
import sys
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

# --- Asegurar que podemos importar 'keygate' desde la raíz del repo ---
ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

SESSION_SECRET = "test-session-secret"
PLATFORM_LINK = "https://ads.platform.test/forced"


def _prepare_test_env() -> None:
    tmp = (ROOT / ".pytest_tmp").absolute()
    tmp.mkdir(exist_ok=True)

    # BD SQLite temporal para pruebas, limpia en cada ejecución
    db_file = tmp / "test.sqlite3"
    if db_file.exists():
        db_file.unlink()
    os.environ["DB_URL"] = f"sqlite+aiosqlite:///{db_file.as_posix()}"

    # Variables mínimas para que Settings funcione sin .env
    os.environ["SESSION_SECRET"] = SESSION_SECRET
    os.environ["SESSION_TOKEN_FORMAT"] = "hmac"
    os.environ["TURNSTILE_SECRET_KEY"] = "test-turnstile-secret"
    os.environ["PLATFORM_AD_LINK"] = PLATFORM_LINK
    os.environ["TRUST_OWNER_HEADER"] = "true"


# Antes de que los módulos de test importen keygate (Settings se lee al importar)
_prepare_test_env()

from sqlalchemy.ext.asyncio import async_sessionmaker  # noqa: E402

from keygate.core.crypto import HmacTokenCodec  # noqa: E402
from keygate.core.errors import QuotaExceeded  # noqa: E402
from keygate.db.models import KeySettings, OwnerPlan, Script  # noqa: E402
from keygate.db.session import make_engine  # noqa: E402
from keygate.services.challenge import ChallengeVerdict, ChallengeVerifier  # noqa: E402
from keygate.services.issuer import CredentialIssuer  # noqa: E402
from keygate.services.limits import OwnerQuota  # noqa: E402
from keygate.services.sessions import GetKeyService  # noqa: E402


@pytest.fixture(scope="session")
def client():
    """
    Cliente de pruebas con entorno efímero:
    - BD sqlite en .pytest_tmp/test.sqlite3
    - secretos de sesión y Turnstile por ENV, sin depender de .env
    """
    from keygate.main import app
    # Con 'with' forzamos lifespan: crea tablas en startup y cierra engine en shutdown
    with TestClient(app) as c:
        yield c


def run_db(work):
    """Ejecuta ``await work(session)`` con un engine propio y hace commit."""
    async def _runner():
        engine = make_engine(os.environ["DB_URL"])
        try:
            async with async_sessionmaker(engine, expire_on_commit=False)() as s:
                result = await work(s)
                await s.commit()
                return result
        finally:
            await engine.dispose()

    return asyncio.run(_runner())


def hdrs(ip: str = "203.0.113.10", device: str | None = None) -> dict:
    h = {"X-Forwarded-For": ip}
    if device is not None:
        h["X-Device-Id"] = device
    return h


def unique_ip() -> str:
    n = uuid.uuid4().int
    return f"198.51.{(n >> 8) % 256}.{n % 256}"


class MutableClock:
    def __init__(self, now: datetime | None = None):
        self.now = now or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeVerifier(ChallengeVerifier):
    def __init__(self, verdict: ChallengeVerdict | None = None):
        self.verdict = verdict or ChallengeVerdict(passed=True)
        self.calls = []

    async def verify(self, proof, requester_address):
        self.calls.append((proof, requester_address))
        return self.verdict


class FakeQuota(OwnerQuota):
    def __init__(self, allow: bool = True):
        self.allow = allow
        self.calls = []

    async def verify_key_quota(self, owner_id, requested):
        self.calls.append((owner_id, requested))
        if not self.allow:
            raise QuotaExceeded()


@pytest.fixture
def getkey(client):
    """Servicio Get Key con reloj controlable, verificador y cupo falsos."""
    from keygate.api.deps import get_getkey_service
    from keygate.db.session import SessionLocal
    from keygate.main import app

    clock = MutableClock()
    verifier = FakeVerifier()
    quota = FakeQuota()
    service = GetKeyService(
        sessionmaker=SessionLocal,
        codec=HmacTokenCodec(SESSION_SECRET),
        verifier=verifier,
        owner_quota=quota,
        issuer=CredentialIssuer(key_prefix="SH-id", max_hours=6, display_minutes=5),
        platform_link=PLATFORM_LINK,
        session_ttl_minutes=30,
        clock=clock,
    )
    app.dependency_overrides[get_getkey_service] = lambda: service
    yield SimpleNamespace(service=service, clock=clock, verifier=verifier, quota=quota)
    app.dependency_overrides.pop(get_getkey_service, None)


async def seed_script(
    s,
    *,
    owner_id: str | None = None,
    status: str = "published",
    deleted: bool = False,
    plan_type: str | None = None,
    maximum_keys: int | None = None,
    **key_settings,
) -> SimpleNamespace:
    """Crea script + ajustes del dueño (+ plan opcional). El llamador hace commit."""
    owner_id = owner_id or f"owner-{uuid.uuid4().hex[:8]}"
    slug = f"script-{uuid.uuid4().hex[:10]}"
    key_settings.setdefault("getkey_enabled", True)

    script = Script(
        slug=slug,
        title=f"Script {slug}",
        owner_id=owner_id,
        status=status,
        deleted_at=datetime.now(timezone.utc) if deleted else None,
    )
    s.add(script)
    if await s.get(KeySettings, owner_id) is None:
        s.add(KeySettings(user_id=owner_id, **key_settings))
    if plan_type or maximum_keys is not None:
        s.add(OwnerPlan(user_id=owner_id, plan_type=plan_type or "free", maximum_keys=maximum_keys))
    await s.flush()
    return SimpleNamespace(id=script.id, slug=slug, owner_id=owner_id)


@pytest.fixture
def make_script(client):
    def _make(**kwargs) -> SimpleNamespace:
        return run_db(lambda s: seed_script(s, **kwargs))

    return _make


@pytest.fixture
async def db_maker(client):
    """Sessionmaker propio para tests async (no comparte loop con el TestClient)."""
    engine = make_engine(os.environ["DB_URL"])
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()
