from sqlalchemy import Column, String, DateTime, Integer, Text
from sqlalchemy.sql import func

from accounts.core.database import Base


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    hashed_password = Column(String(255), nullable=False)
    nickname = Column(String(50), nullable=True)
    bio = Column(Text, nullable=True)
    avatar = Column(String(512), nullable=True)  # public path, e.g. /uploads/avatars/<name>.png
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
