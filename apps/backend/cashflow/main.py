from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .core.config import settings
from .core.database import get_session_factory
from .exceptions import ConversionError, NotFoundError, TransientStoreError, ValidationError
from .logging_config import configure_logging, get_logger
from .routers import router
from .scheduler import DailyTrigger


logger = get_logger("app")


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(level=settings.LOG_LEVEL, json_lines=settings.LOG_JSON)
    trigger = None
    if settings.SCHEDULER_ENABLED:
        trigger = DailyTrigger(get_session_factory())
        trigger.start()
    app.state.daily_trigger = trigger
    try:
        yield
    finally:
        if trigger is not None:
            trigger.stop()


app = FastAPI(title=settings.APP_NAME, version="0.1.0", lifespan=lifespan)

# CORS (프론트엔드 연결 준비)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Total-Count"],
)


@app.exception_handler(NotFoundError)
def handle_not_found(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc), "code": exc.code})


@app.exception_handler(ValidationError)
def handle_validation(request: Request, exc: ValidationError):
    return JSONResponse(
        status_code=422,
        content={
            "detail": str(exc),
            "code": exc.code,
            "violations": [v.as_dict() for v in exc.violations],
        },
    )


@app.exception_handler(ConversionError)
def handle_conversion(request: Request, exc: ConversionError):
    return JSONResponse(status_code=422, content={"detail": str(exc), "code": exc.code})


@app.exception_handler(TransientStoreError)
def handle_transient(request: Request, exc: TransientStoreError):
    logger.warning("transient_store_error", extra={"path": request.url.path, "error": str(exc)})
    return JSONResponse(status_code=503, content={"detail": str(exc), "code": exc.code})


@app.get("/health")
def health():
    return {"status": "ok"}


app.include_router(router, prefix="/api")
