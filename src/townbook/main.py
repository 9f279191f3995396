import logging
import time
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from townbook.config import settings
from townbook.db import init_db
from townbook.api.router import router
from townbook.deps import close_mailer
from townbook.overlap import OverlapPolicy

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)

app = FastAPI(title=settings.APP_NAME)
app.include_router(router)

@app.on_event("startup")
async def on_startup():
    # refuse to start on a misspelt policy
    policy = OverlapPolicy.from_setting(settings.ROOM_OVERLAP_POLICY)
    await init_db()
    logger.info("%s started (env=%s, room overlap policy=%s)", settings.APP_NAME, settings.ENV, policy.value)

@app.on_event("shutdown")
async def on_shutdown():
    await close_mailer()

@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started) * 1000
    logger.info("%s %s -> %s (%.1f ms)", request.method, request.url.path, response.status_code, elapsed_ms)
    return response

@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    if settings.is_dev:
        return JSONResponse(status_code=500, content={"detail": str(exc), "error": type(exc).__name__})
    return JSONResponse(status_code=500, content={"detail": "Something went wrong"})
