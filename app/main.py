from fastapi import FastAPI
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import IntegrityError
from starlette.exceptions import HTTPException
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from timing_asgi import TimingMiddleware, TimingClient  # type: ignore
from timing_asgi.integrations import StarletteScopeToName  # type: ignore

from app.core import config
from app.core.database.engine import init_db
from app.features.organizations.routes import router as organization_router
from app.features.permissions.routes import router as permission_router
from app.features.delegation.routes import router as delegation_router
from app.features.overrides.routes import router as override_router
from app.features.groups.routes import router as group_router
from app.features.teams.routes import (
    router as team_router,
    member_router,
    position_router,
)
from app.features.people.dependencies import get_authorization_header
from app.utils import get_logger


log = get_logger(__name__)
log.info("Initializing server")
app = FastAPI(
    title="School Permissions API",
    description="Position-based permissions, overrides and delegation for school staff",
    version="0.1.0",
    docs_url="/docs" if config.ENABLE_DOCS else None,
    redoc_url="/redoc" if config.ENABLE_DOCS else None,
    openapi_url="/openapi.json" if config.ENABLE_DOCS else None
)
limiter = Limiter(
    key_func=get_authorization_header,
    default_limits=[config.RATE_LIMIT],
    enabled=config.RATE_LIMIT_ENABLED,
)
app.state.limiter = limiter
app.add_middleware(SlowAPIMiddleware)


class PrintTimings(TimingClient):
    def timing(self, metric_name, timing, tags):
        log.debug(dict(route=metric_name.removeprefix("main.app.features."), timing=timing, tags=tags))


app.add_middleware(TimingMiddleware, client=PrintTimings(), metric_namer=StarletteScopeToName("main", app))

if config.ENABLE_DOCS:
    log.warning("Docs enabled")
if config.ALLOW_ORIGIN:
    log.warning("Setting allow origin to %s", config.ALLOW_ORIGIN)
    origins = [config.ALLOW_ORIGIN]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(_request: Request, exc: RequestValidationError):
    errors = dict()
    for error in exc.errors():
        if "loc" not in error or "msg" not in error:
            continue
        loc = error["loc"]
        key = loc[-1] if loc else "root"
        if key in ("__root__", "body"):
            key = "root"
        errors[key] = error["msg"]
    log.info("Request validation error %s", errors)
    return JSONResponse(
        status_code=400,
        content=jsonable_encoder({"error": "Validation error", "details": errors})
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(_request: Request, exc: HTTPException):
    # Handlers may pass a ready-made body carrying extra keys next to "error"
    if isinstance(exc.detail, dict):
        content = exc.detail
    else:
        content = {"error": exc.detail}
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(content), headers=exc.headers)


@app.exception_handler(IntegrityError)
async def integrity_error_handler(_request: Request, exc: IntegrityError):
    log.warning("Integrity error: %s", exc.orig)
    return JSONResponse(status_code=409, content={"error": "Conflict with an existing record"})


@app.exception_handler(RateLimitExceeded)
def rate_limit_exceeded_handler(_request: Request, _exc: RateLimitExceeded) -> Response:
    return JSONResponse({"error": "You are going too fast"}, status_code=429)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    log.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


@app.on_event("startup")
async def startup():
    """Initialize database on application startup."""
    log.info("Initializing database...")
    await init_db()
    log.info("Database initialized successfully")


@app.get("/")
async def root():
    """Root endpoint - API health check."""
    return {
        "message": "School Permissions API",
        "version": "0.1.0",
        "status": "online",
        "docs": "/docs" if config.ENABLE_DOCS else None,
        "authentication": {
            "info": "Every /api endpoint requires a Bearer token and a current organization",
        },
        "features": {
            "delegation": "Hand delegable position permissions to colleagues",
            "user_overrides": "Per-person grants and explicit denials with optional expiry",
            "permission_groups": "Named action bundles assigned to people, optionally expiring",
            "members": "Team membership with position changes written to the audit log",
            "permissions": "Action registry, position permissions and effective permission checks",
            "audit_logs": "Append-only history of every permission change",
        }
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}


# Include routers
app.include_router(delegation_router, prefix="/api/delegation", tags=["delegation"])
app.include_router(override_router, prefix="/api/user-overrides", tags=["user-overrides"])
app.include_router(group_router, prefix="/api/permission-groups", tags=["permission-groups"])
app.include_router(member_router, prefix="/api/members", tags=["members"])
app.include_router(team_router, prefix="/api/teams", tags=["teams"])
app.include_router(position_router, prefix="/api/positions", tags=["positions"])

# Action types, position permissions, checks, expiry and audit log
app.include_router(permission_router, prefix="/api", tags=["permissions"])

# Organization routes
app.include_router(organization_router, prefix="/api/organizations", tags=["organizations"])
