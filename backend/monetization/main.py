from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import settings
from .errors import MonetizationError
from .routes import admin, creator, premium, views, wallets
from .services import maintenance


logger = logging.getLogger(__name__)

API_PREFIX = "/api/monetization"
HTTP_ERROR_CODES = {
    400: "bad_request",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    409: "conflict",
}


def configure_logging() -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    maintenance.start()
    yield
    maintenance.shutdown()


app = FastAPI(title="Video Monetization API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(MonetizationError)
async def monetization_error_handler(request: Request, exc: MonetizationError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "code": HTTP_ERROR_CODES.get(exc.status_code, "error"), "message": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"{field}: {first.get('msg')}" if field else "Invalid request."
    return JSONResponse(
        status_code=400,
        content={"success": False, "code": "validation_error", "message": message},
    )


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"success": False, "code": "server_error", "message": "Internal server error."},
    )


app.include_router(views.router, prefix=API_PREFIX, tags=["Ad Views"])
app.include_router(creator.router, prefix=API_PREFIX, tags=["Creator"])
app.include_router(wallets.router, prefix=API_PREFIX, tags=["Wallets"])
app.include_router(premium.router, prefix=API_PREFIX, tags=["Premium"])
app.include_router(admin.router, prefix=API_PREFIX, tags=["Admin"])


@app.get("/health")
def health():
    return {"status": "ok", "payments": settings.payment_provider_configured}
