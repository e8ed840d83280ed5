import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .config import get_settings
from .database import Base, engine
from .errors import SigningError
from .routers import documents, signing, users

settings = get_settings()

# Configure logging
logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create database tables on startup"""
    try:
        logger.info("Creating database tables...")
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables created successfully!")
    except Exception as e:
        logger.error(f"Error creating database tables: {e}")
        raise
    yield


app = FastAPI(title=settings.APP_NAME, lifespan=lifespan)


@app.exception_handler(SigningError)
async def signing_error_handler(request: Request, exc: SigningError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Mount API routers
app.include_router(users.router)
app.include_router(documents.router, prefix="/documents", tags=["documents"])
app.include_router(signing.router, tags=["signing"])


@app.get("/health")
def health_check():
    """Health check endpoint for debugging"""
    return {
        "status": "ok",
        "database": engine.url.get_backend_name(),
        "storage": "vercel_blob" if settings.BLOB_READ_WRITE_TOKEN else "local",
        "mail": "smtp" if settings.SMTP_HOST else "log",
    }
