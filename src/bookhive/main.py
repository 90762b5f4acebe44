import asyncio
import logging
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException
from bookhive.config import settings
from bookhive.db import SessionLocal, init_db
from bookhive.api.router import router
from bookhive.api.queries import router as queries_router
from bookhive.email.client import build_mailer
from bookhive.actions.auth import ensure_admin_secret
from bookhive.worker.scheduler import run_scheduler

logging.basicConfig(level=settings.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.APP_NAME)
app.include_router(router)
app.include_router(queries_router)

@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.detail})

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = f"Invalid input: {field} {first.get('msg', '')}".strip() if field else "Invalid input"
    return JSONResponse(status_code=400, content={"success": False, "error": message})

@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"success": False, "error": "Internal server error"})

@app.on_event("startup")
async def on_startup():
    if not settings.ADMIN_JWT_SECRET_CONFIGURED:
        logger.warning("[auth] ADMIN_JWT_SECRET is not set; using a random per-process key, admin sessions end on restart")
    await init_db()
    async with SessionLocal() as session:
        await ensure_admin_secret(session, settings.ADMIN_PASSWORD)
    app.state.mailer = build_mailer(settings)
    if settings.ENABLE_OVERDUE_SCHEDULER:
        app.state.scheduler = asyncio.create_task(run_scheduler(app.state.mailer))

@app.on_event("shutdown")
async def on_shutdown():
    task = getattr(app.state, "scheduler", None)
    if task:
        task.cancel()
    mailer = getattr(app.state, "mailer", None)
    if mailer:
        await mailer.aclose()

def run():
    import uvicorn
    uvicorn.run("bookhive.main:app", host="0.0.0.0", port=settings.PORT, log_level=settings.LOG_LEVEL.lower())
