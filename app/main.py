from fastapi import FastAPI
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from timing_asgi import TimingMiddleware, TimingClient  # type: ignore
from timing_asgi.integrations import StarletteScopeToName  # type: ignore

from app.core import config
from app.core.database.engine import init_db
from app.core.errors import Conflict, NotFound, PermissionDenied, Unauthenticated, ValidationFailed
from app.features.users.routes import router as user_router
from app.features.permissions.routes import router as permission_router
from app.features.abac.routes import router as abac_router
from app.features.audit.routes import router as audit_router
from app.features.permissions.cache import build_permission_cache
from app.features.users.auth import signing_key
from app.features.users.dependencies import get_authorization_header
from app.utils import get_logger


log = get_logger(__name__)
log.info("Initializing server")
app = FastAPI(
    title="Edunexa Access",
    description="Access control for the Edunexa education platform: roles, contextual rules and audit trail",
    version="0.1.0",
    docs_url="/docs" if config.ENABLE_DOCS else None,
    redoc_url="/redoc" if config.ENABLE_DOCS else None,
    openapi_url="/openapi.json" if config.ENABLE_DOCS else None
)
limiter = Limiter(key_func=get_authorization_header)
app.state.limiter = limiter
app.state.permission_cache = build_permission_cache()


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
        key = error["loc"][-1]
        if key == "__root__":
            key = "root"
        errors[key] = error["msg"]
    log.info("Request validation error %s", errors)
    return JSONResponse(status_code=400, content=jsonable_encoder(errors))


@app.exception_handler(Unauthenticated)
async def unauthenticated_handler(_request: Request, exc: Unauthenticated):
    return JSONResponse(
        status_code=401,
        content={"detail": exc.detail},
        headers={"WWW-Authenticate": "Bearer"},
    )


@app.exception_handler(PermissionDenied)
async def permission_denied_handler(_request: Request, exc: PermissionDenied):
    content = {"detail": exc.detail}
    if exc.resource:
        content.update(resource=exc.resource, action=exc.action)
    return JSONResponse(status_code=403, content=content)


@app.exception_handler(ValidationFailed)
async def validation_failed_handler(_request: Request, exc: ValidationFailed):
    log.info("Validation failed %s", exc.fields)
    return JSONResponse(status_code=400, content=jsonable_encoder({"detail": exc.detail, "fields": exc.fields}))


@app.exception_handler(NotFound)
async def not_found_handler(_request: Request, exc: NotFound):
    return JSONResponse(status_code=404, content={"detail": exc.detail})


@app.exception_handler(Conflict)
async def conflict_handler(_request: Request, exc: Conflict):
    return JSONResponse(status_code=409, content={"detail": exc.detail})


@app.exception_handler(RateLimitExceeded)
def rate_limit_exceeded_handler(_request: Request, _exc: RateLimitExceeded) -> Response:
    return JSONResponse({"error": "You are going too fast"}, status_code=429)


@app.on_event("startup")
async def startup():
    """Check the token key and initialize the database on application startup."""
    signing_key()
    log.info("Initializing database...")
    await init_db()
    log.info("Database initialized successfully (permission cache ttl=%ss)", config.PERMISSION_CACHE_TTL_SECONDS)


@app.get("/")
async def root():
    """Root endpoint - API health check."""
    return {
        "message": "Edunexa Access API",
        "version": "0.1.0",
        "status": "online",
        "docs": "/docs" if config.ENABLE_DOCS else None,
        "authentication": {
            "info": "Protected endpoints require Bearer token in Authorization header",
            "protected_endpoints": ["/users/*", "/permissions/*", "/abac/*", "/audit/*"],
            "public_endpoints": ["/", "/health"]
        },
        "features": {
            "permissions": "Institution/polo-scoped roles with synonym-aware resource and action matching",
            "abac": "Institution phase, academic period and payment status rules on top of roles",
            "audit": "Append-only trail of permission changes with CSV/JSON export",
            "users": "Identity context resolved from Bearer tokens"
        }
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}


# Include routers
app.include_router(user_router, prefix="/users", tags=["users"])

# Permission routes (RBAC)
app.include_router(permission_router, prefix="/permissions", tags=["permissions"])

# Attribute rule routes (ABAC)
app.include_router(abac_router, prefix="/abac", tags=["abac"])

# Audit trail routes
app.include_router(audit_router, prefix="/audit", tags=["audit"])
