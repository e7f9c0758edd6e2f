import os
import time
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from .config import allowed_origins, configure_logging
from .db import init_db, close_db
from .errors import PFSError
from .routes import clients, projects, setup, stages, tasks, users

configure_logging()
log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    # Startup
    try:
        await init_db()
    except Exception as e:
        log.error("Database connection failed: %s", e)
        log.warning("Application will start but database features may not work")
    yield
    # Shutdown
    await close_db()


app = FastAPI(
    title="PFS Automation API",
    description="Project management backend: clients, projects, stages and hierarchical tasks",
    version="1.0.0",
    lifespan=lifespan
)

cors_origins = allowed_origins()
log.info("CORS origins: %s", cors_origins)

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)


# Request logging middleware
@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started) * 1000
    log.info("%s %s -> %d (%.1f ms)", request.method, request.url.path, response.status_code, elapsed_ms)
    return response


@app.exception_handler(PFSError)
async def pfs_error_handler(request: Request, exc: PFSError):
    if exc.status_code >= 500:
        log.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = "; ".join(
        f"{'.'.join(str(part) for part in error['loc'] if part != 'body')}: {error['msg']}"
        for error in errors
    )
    return JSONResponse(status_code=400, content={"detail": message or "Invalid request"})


# Include routers
for module in (setup, users, clients, projects, stages, tasks):
    app.include_router(module.router, prefix="/api")


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "PFS Automation API",
        "version": app.version,
        "status": "running",
        "docs": "/docs",
        "health": "/health",
    }


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "service": "pfs-automation-backend",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 3333))
    host = os.getenv("HOST", "0.0.0.0")
    debug = os.getenv("DEBUG", "False").lower() == "true"

    uvicorn.run(
        "pfs_automation.main:app",
        host=host,
        port=port,
        reload=debug,
        log_level="info"
    )
