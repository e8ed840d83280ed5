from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from .config import get_settings


def build_database_url(raw_url):
    """Normalise a hosted Postgres URL; fall back to a local SQLite file."""
    if not raw_url:
        return "sqlite:///./chainsign.db"

    # Hosted providers hand out postgres:// but SQLAlchemy needs postgresql://
    if raw_url.startswith("postgres://"):
        raw_url = raw_url.replace("postgres://", "postgresql://", 1)

    if raw_url.startswith("postgresql") and "sslmode" not in raw_url:
        if "?" in raw_url:
            raw_url += "&sslmode=require"
        else:
            raw_url += "?sslmode=require"
    return raw_url


DATABASE_URL = build_database_url(get_settings().DATABASE_URL)

if DATABASE_URL.startswith("sqlite"):
    engine = create_engine(DATABASE_URL, connect_args={"check_same_thread": False})
else:
    engine = create_engine(DATABASE_URL, pool_pre_ping=True)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
