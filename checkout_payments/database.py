from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

from checkout_payments.config import get_settings

DATABASE_URL = get_settings().database_url

engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}
)

SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
Base = declarative_base()


def get_db():
    """One session per request; routes receive it through Depends."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
