"""FastAPI application entry point."""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from deflection.config import settings
from deflection.api import deflection, health, knowledge, tenants, webhooks
from deflection.database import init_db
from deflection.logs import configure_logging
from deflection.middleware.auth import create_admin_token
from deflection.workers.base import build_processor

configure_logging()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    app.state.processor = build_processor()
    if settings.processor_enabled:
        app.state.processor.start()
    yield
    if settings.processor_enabled:
        app.state.processor.stop()
    logger.info("app_shutdown")


app = FastAPI(
    title=settings.app_name,
    description="Automatic deflection of customer support tickets",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# CORS - allow admin frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://localhost:3001"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Mount routers
app.include_router(health.router, prefix=settings.api_prefix)
app.include_router(webhooks.router, prefix=settings.api_prefix)
app.include_router(tenants.router, prefix=settings.api_prefix)
app.include_router(deflection.router, prefix=settings.api_prefix)
app.include_router(knowledge.router, prefix=settings.api_prefix)


@app.get("/")
def root():
    return {
        "name": settings.app_name,
        "version": "1.0.0",
        "docs": "/docs",
    }


class LoginRequest(BaseModel):
    email: str
    password: str


class LoginResponse(BaseModel):
    token: str
    email: str


@app.post(f"{settings.api_prefix}/auth/login", response_model=LoginResponse)
def login(req: LoginRequest):
    """Simple admin login. Returns JWT token."""
    if req.email == settings.admin_email and req.password == settings.admin_password:
        token = create_admin_token(req.email)
        return LoginResponse(token=token, email=req.email)
    raise HTTPException(status_code=401, detail="Invalid credentials")
