"""Database base configuration"""
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from jiracdc.config import settings

engine = create_engine(
    settings.database_url,
    connect_args={"check_same_thread": False} if "sqlite" in settings.database_url else {},
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def init_db(bind=None):
    """Initialize database"""
    # Ensure all models are imported so SQLAlchemy metadata is populated.
    import jiracdc.models  # noqa: F401  (import for side-effects)

    Base.metadata.create_all(bind=bind or engine)
