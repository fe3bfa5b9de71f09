import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import inspect

from app.api.endpoints import admin, auth, checkout
from app.core.database import Base, engine
from app.core.settings import settings

# Register every table on Base.metadata before create_all.
from app.models import coupon, order, profile  # noqa: F401

logger = logging.getLogger("app")

app = FastAPI(title="Storefront Admin Coupon API")

# Configure CORS
origins = settings.resolved_cors_origins()
if origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


@app.on_event("startup")
def startup() -> None:
    logging.basicConfig(format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    logger.setLevel(settings.log_level)

    if settings.basic_auth_enabled and (settings.basic_auth_username is None or settings.basic_auth_password is None):
        raise RuntimeError("Basic Auth is enabled but BASIC_AUTH_USERNAME/BASIC_AUTH_PASSWORD are not set")
    # Fails fast in production when SESSION_SECRET is missing.
    settings.resolved_session_secret()
    if not (settings.admin_email and settings.admin_password and settings.admin_otp_code):
        logger.warning("startup.admin_login_disabled reason=missing_admin_credentials")

    if settings.db_auto_create:
        Base.metadata.create_all(bind=engine)

    tables = set(inspect(engine).get_table_names())
    missing = {"coupons", "coupon_usage"} - tables
    if missing:
        logger.warning("startup.tables_missing tables=%s", ",".join(sorted(missing)))


# API Routes
app.include_router(auth.router, prefix="/api", tags=["auth"])
app.include_router(checkout.router, prefix="/api", tags=["checkout"])
app.include_router(admin.router, prefix="/api", tags=["admin"])


@app.get("/health")
async def health_check():
    return {"status": "healthy"}
