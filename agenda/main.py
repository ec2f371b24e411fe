import logging

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .core.config import get_settings
from .core.db import Base, engine
from .core.errors import (
    ConfigurationError,
    DataAccessError,
    InvalidTransitionError,
    NotFoundError,
    ParseError,
    SlotConflictError,
)
from .core.responses import ErrorCodes, error_response
from .routes import router
from .tokens import get_token_service

settings = get_settings()
app = FastAPI(title="Agenda Scheduling Core")
logger = logging.getLogger(__name__)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router)


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================

@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=error_response(
            ErrorCodes.VALIDATION_ERROR,
            "Request validation failed",
            {"errors": jsonable_encoder(exc.errors())},
        ),
    )


@app.exception_handler(ParseError)
async def handle_parse_error(request: Request, exc: ParseError):
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=error_response(ErrorCodes.INVALID_INPUT, str(exc)),
    )


@app.exception_handler(NotFoundError)
async def handle_not_found(request: Request, exc: NotFoundError):
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content=error_response(ErrorCodes.NOT_FOUND, f"{exc.entity} not found"),
    )


@app.exception_handler(InvalidTransitionError)
async def handle_invalid_transition(request: Request, exc: InvalidTransitionError):
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content=error_response(
            ErrorCodes.INVALID_TRANSITION,
            str(exc),
            {"current": exc.current, "target": exc.target},
        ),
    )


@app.exception_handler(SlotConflictError)
async def handle_slot_conflict(request: Request, exc: SlotConflictError):
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content=error_response(ErrorCodes.SLOT_CONFLICT, str(exc)),
    )


@app.exception_handler(DataAccessError)
async def handle_data_access_error(request: Request, exc: DataAccessError):
    logger.error("Request %s %s failed closed: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content=error_response(ErrorCodes.STORE_UNAVAILABLE, "Booking data is temporarily unavailable. Please try again."),
    )


@app.exception_handler(ConfigurationError)
async def handle_configuration_error(request: Request, exc: ConfigurationError):
    logger.error("Configuration error: %s", exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_response(ErrorCodes.CONFIGURATION_ERROR, "Service is misconfigured"),
    )


@app.on_event("startup")
async def on_startup():
    logging.getLogger().setLevel(settings.log_level.upper())
    # Refuse to start without a token secret
    get_token_service()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Agenda scheduling core started")


@app.get("/health")
async def health():
    return {"status": "ok"}
