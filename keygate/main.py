# keygate/main.py
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from keygate.api.getkey import router as getkey_router
from keygate.api.keys import router as keys_router
from keygate.api.verifier import router as verifier_router

from keygate.core.config import settings
from keygate.core.errors import GetKeyError, RateLimited
from keygate.db.session import engine
from keygate.db.models import Base

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("keygate")

_HTTP_ERROR_KINDS = {400: "BadRequest", 401: "Unauthorized", 403: "Forbidden", 404: "NotFound"}


@asynccontextmanager
async def lifespan(app: FastAPI):
    # === STARTUP ===
    missing = settings.missing_secrets()
    if missing:
        raise RuntimeError(f"Missing required configuration: {', '.join(missing)}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Keygate started (token format: %s)", settings.session_token_format)
    yield
    # === SHUTDOWN ===
    await engine.dispose()


app = FastAPI(title="Keygate Get Key", lifespan=lifespan)


@app.exception_handler(GetKeyError)
async def getkey_error_handler(request: Request, exc: GetKeyError):
    headers = None
    if isinstance(exc, RateLimited):
        headers = {"Retry-After": str(exc.cooldown_hours * 3600)}
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload(), headers=headers)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    fields = ", ".join(".".join(str(p) for p in err["loc"][1:]) or "body" for err in exc.errors())
    return JSONResponse(status_code=400, content={"error": "ValidationError", "message": f"Invalid fields: {fields}"})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    kind = _HTTP_ERROR_KINDS.get(exc.status_code, "ServerError" if exc.status_code >= 500 else "BadRequest")
    return JSONResponse(status_code=exc.status_code, content={"error": kind, "message": str(exc.detail)})


app.include_router(getkey_router, prefix="/public", tags=["getkey"])
app.include_router(keys_router, prefix="/keys", tags=["keys"])
app.include_router(verifier_router, prefix="/verifier", tags=["verifier"])


@app.get("/health")
def health():
    return {"ok": True}
