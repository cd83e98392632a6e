from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from accounts.core.config import settings

connect_args = {}
if settings.DATABASE_URL.startswith("sqlite"):
    # TestClient runs handlers in a worker thread
    connect_args["check_same_thread"] = False

engine = create_engine(
    settings.DATABASE_URL,
    pool_pre_ping=True,
    connect_args=connect_args,
)

SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)

Base = declarative_base()
