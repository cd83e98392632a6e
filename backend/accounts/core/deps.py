from typing import Generator

from sqlalchemy.orm import Session

from accounts.core.database import SessionLocal


def get_db() -> Generator[Session, None, None]:
    """One session per request; closed when the response is sent."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
