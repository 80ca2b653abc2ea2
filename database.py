from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    event,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from config import settings


def utcnow() -> datetime:
    """Naive UTC timestamp, the representation stored in every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    pass


class LocalBase(DeclarativeBase):
    """Tables kept on the client installation, never on the license server."""


# Server Models
class License(Base):
    __tablename__ = "licenses"

    id = Column(Integer, primary_key=True, index=True)
    license_key = Column(String(17), unique=True, nullable=False, index=True)
    status = Column(String(20), nullable=False, default="active")  # active | inactive
    max_activations = Column(Integer, nullable=False, default=2)
    current_activations = Column(Integer, nullable=False, default=0)
    expires_at = Column(DateTime, nullable=True)  # null = perpetual
    created_at = Column(DateTime, default=utcnow)


class Activation(Base):
    __tablename__ = "activations"

    id = Column(Integer, primary_key=True, index=True)
    license_key = Column(String(17), ForeignKey("licenses.license_key"), nullable=False, index=True)
    machine_id = Column(String(32), nullable=False)
    activated_at = Column(DateTime, default=utcnow)
    last_validated_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("license_key", "machine_id", name="uq_activation_license_machine"),
    )


class ValidationLog(Base):
    __tablename__ = "validation_logs"

    id = Column(Integer, primary_key=True, index=True)
    license_key = Column(String(64))
    machine_id = Column(String(64))
    action = Column(String(20), nullable=False)  # activate, validate, deactivate
    success = Column(Boolean, nullable=False, default=False)
    outcome = Column(String(40), nullable=False)
    reason = Column(Text)
    created_at = Column(DateTime, default=utcnow, index=True)


# Client Models
class SystemConfig(LocalBase):
    __tablename__ = "system_config"

    id = Column(Integer, primary_key=True, index=True)
    key = Column(String(100), unique=True, nullable=False, index=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


def make_engine(url: str) -> Engine:
    """
    Create an engine for `url`.

    SQLite transactions are started with BEGIN IMMEDIATE so that concurrent
    writers queue on the database lock instead of failing on lock upgrade.
    """
    if not url.startswith("sqlite"):
        return create_engine(url, pool_pre_ping=True)

    engine = create_engine(url, connect_args={"check_same_thread": False})

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    Base.metadata.create_all(bind=engine)


def init_local_db(engine: Engine) -> None:
    LocalBase.metadata.create_all(bind=engine)


engine = make_engine(settings.DATABASE_URL)
SessionLocal = make_session_factory(engine)
