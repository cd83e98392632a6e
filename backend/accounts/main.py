import logging
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from sqlalchemy.exc import SQLAlchemyError

from accounts.core.config import settings
from accounts.core.errors import AccountError, StoreFailure
from accounts.models import Base  # noqa: F401 - register models
from accounts.routers import auth, health, users, verification

logger = logging.getLogger(__name__)

app = FastAPI(
    title=f"{settings.APP_NAME} API",
    description="User accounts: email-code registration, login, password reset and profiles",
    version="0.1.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Authorization"],
)


def _error_response(exc: AccountError) -> JSONResponse:
    headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
    return JSONResponse(
        status_code=exc.status_code,
        content={"code": exc.status_code, "error": exc.code, "detail": exc.message},
        headers=headers,
    )


@app.exception_handler(AccountError)
async def account_error_handler(request: Request, exc: AccountError):
    return _error_response(exc)


@app.exception_handler(SQLAlchemyError)
async def store_error_handler(request: Request, exc: SQLAlchemyError):
    logger.exception("Database error on %s %s: %s", request.method, request.url.path, exc)
    return _error_response(StoreFailure())


app.include_router(health.router, prefix="/health")
app.include_router(verification.router, prefix="/api/verify")
app.include_router(auth.router, prefix="/api")
app.include_router(users.router, prefix="/api/users")

# Serve uploaded avatars
upload_dir = Path(settings.UPLOAD_DIR)
upload_dir.mkdir(parents=True, exist_ok=True)
app.mount("/uploads", StaticFiles(directory=str(upload_dir)), name="uploads")
