"""
Stable per-installation machine id.

The id is a random 32 character lowercase hex string, resolved through an
ordered list of providers: the local key-value store, then a data file, then
a session-only value. A stored id that is not 32 hex characters is replaced.
"""

import logging
import platform
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

import psutil
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from database import SystemConfig, init_local_db, make_engine, make_session_factory, utcnow
from errors import IdentityStorageError
from key_codec import is_valid_machine_id

MACHINE_ID_KEY = "machine_id"
MACHINE_ID_FILENAME = "machine.id"
LOCAL_STORE_FILENAME = "local.db"


def generate_machine_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class ResolvedMachineId:
    value: str
    source: str
    persistent: bool = True

    @property
    def degraded(self) -> bool:
        return not self.persistent


class LocalStoreProvider:
    """Keeps the id in the installation's local SQLite `system_config` table."""

    name = "local_store"
    persistent = True

    def __init__(self, session_factory: Optional[sessionmaker] = None, database_path: Optional[Path] = None,
                 logger: Optional[logging.Logger] = None):
        self.session_factory = session_factory
        self.database_path = database_path
        self.logger = logger or logging.getLogger(__name__)

    def available(self) -> bool:
        if self.session_factory is not None:
            return True
        if self.database_path is None:
            return False
        try:
            self.database_path.parent.mkdir(parents=True, exist_ok=True)
            engine = make_engine(f"sqlite:///{self.database_path}")
            init_local_db(engine)
        except (OSError, SQLAlchemyError) as exc:
            self.logger.warning("Local store unavailable at %s: %s", self.database_path, exc)
            return False
        self.session_factory = make_session_factory(engine)
        return True

    def get_or_create(self, name: str) -> str:
        session = self.session_factory()
        try:
            with session.begin():
                row = session.execute(
                    select(SystemConfig).where(SystemConfig.key == name)
                ).scalar_one_or_none()

                if row is not None and is_valid_machine_id(row.value):
                    self.logger.debug("Found machine ID in local store")
                    return row.value.lower()

                value = generate_machine_id()
                if row is None:
                    session.add(SystemConfig(key=name, value=value))
                    self.logger.info("Generated new machine ID")
                else:
                    row.value = value
                    row.updated_at = utcnow()
                    self.logger.warning("Machine ID in local store corrupted, regenerated")
                return value
        except SQLAlchemyError as exc:
            raise IdentityStorageError(f"Local store failed: {exc}") from exc
        finally:
            session.close()


class DataFileProvider:
    """Keeps the id in a plain file inside the application data directory."""

    name = "data_file"
    persistent = True

    def __init__(self, directory: Path, filename: str = MACHINE_ID_FILENAME,
                 logger: Optional[logging.Logger] = None):
        self.path = Path(directory) / filename
        self.logger = logger or logging.getLogger(__name__)

    def available(self) -> bool:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            self.logger.warning("Data directory unavailable: %s", exc)
            return False
        return True

    def get_or_create(self, name: str) -> str:
        try:
            if self.path.exists():
                # Undecodable bytes become U+FFFD and fail the format check below
                value = self.path.read_bytes().decode("utf-8", errors="replace").strip()
                if is_valid_machine_id(value):
                    self.logger.debug("Read machine ID from %s", self.path)
                    return value.lower()
                self.logger.warning("Machine ID file corrupted, regenerating")

            value = generate_machine_id()
            self.path.write_text(value, encoding="utf-8")
            self.logger.info("New machine ID written to %s", self.path)
            return value
        except OSError as exc:
            raise IdentityStorageError(f"Machine ID file failed: {exc}") from exc


class VolatileProvider:
    """Last resort: an id that lives only as long as this process."""

    name = "volatile"
    persistent = False

    def available(self) -> bool:
        return True

    def get_or_create(self, name: str) -> str:
        return generate_machine_id()


class MachineIdentityResolver:
    def __init__(self, providers: List, logger: Optional[logging.Logger] = None):
        self.providers = providers
        self.logger = logger or logging.getLogger(__name__)
        self._resolved: Optional[ResolvedMachineId] = None

    @classmethod
    def for_directory(cls, data_dir: Path, logger: Optional[logging.Logger] = None) -> "MachineIdentityResolver":
        data_dir = Path(data_dir)
        return cls(
            [
                LocalStoreProvider(database_path=data_dir / LOCAL_STORE_FILENAME, logger=logger),
                DataFileProvider(data_dir, logger=logger),
                VolatileProvider(),
            ],
            logger=logger,
        )

    def resolve(self) -> ResolvedMachineId:
        if self._resolved is not None:
            return self._resolved

        for provider in self.providers:
            if not provider.available():
                continue
            try:
                value = provider.get_or_create(MACHINE_ID_KEY)
            except IdentityStorageError as exc:
                self.logger.warning("Machine ID provider %s failed: %s", provider.name, exc)
                continue

            self._resolved = ResolvedMachineId(value, provider.name, provider.persistent)
            if self._resolved.degraded:
                self.logger.warning("Using non-persistent machine ID for this session")
            return self._resolved

        raise IdentityStorageError("No machine ID provider succeeded")

    def get_machine_id(self) -> str:
        return self.resolve().value


def get_system_info() -> dict:
    """
    Collect system information for client diagnostics.
    """
    return {
        "os_platform": platform.system(),
        "os_release": platform.release(),
        "os_version": platform.version(),
        "cpu_count": psutil.cpu_count(logical=True),
        "total_memory_gb": round(psutil.virtual_memory().total / (1024**3), 2),
        "hostname": platform.node(),
        "architecture": platform.machine()
    }
