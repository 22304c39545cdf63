"""SQLAlchemy ORM models for database tables."""

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Index, Integer, Text
from sqlalchemy.sql import func
from .db import Base


class User(Base):
    """User model mapped to 'users' table."""

    __tablename__ = "users"
    __table_args__ = {"sqlite_autoincrement": True}

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(Text, nullable=False, unique=True)
    # Opaque hash string, only ever produced and read by sonar.auth
    password = Column(Text, nullable=False)
    real_name = Column(Text, nullable=False, default="", server_default="")
    blurb = Column(Text, nullable=False, default="", server_default="")

    def __repr__(self) -> str:
        return f"<User id={self.id} username={self.username!r}>"


class Ping(Base):
    """Ping (short post) model mapped to 'pings' table."""

    __tablename__ = "pings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column("user", Integer, ForeignKey("users.id"), nullable=False)
    timestamp = Column(DateTime(timezone=True), nullable=False, server_default=func.current_timestamp())
    content = Column(Text, nullable=False)
    likes = Column(Integer, nullable=False, default=0, server_default="0")
    echoes = Column(Integer, nullable=False, default=0, server_default="0")

    __table_args__ = (
        CheckConstraint("likes >= 0", name="ck_pings_likes_non_negative"),
        CheckConstraint("echoes >= 0", name="ck_pings_echoes_non_negative"),
        Index("pings_user_timestamp_index", user_id, timestamp.desc()),
        {"sqlite_autoincrement": True},
    )

    def __repr__(self) -> str:
        return f"<Ping id={self.id} user={self.user_id}>"


class AuthToken(Base):
    """Auth token model mapped to 'auth_tokens' table. At most one token per user."""

    __tablename__ = "auth_tokens"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column("user", Integer, ForeignKey("users.id"), unique=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, server_default=func.current_timestamp())
    key = Column(Text, nullable=False)

    __table_args__ = (
        Index("auth_token_key_index", key, unique=True),
        {"sqlite_autoincrement": True},
    )

    def __repr__(self) -> str:
        return f"<AuthToken id={self.id} user={self.user_id}>"
