"""
Durable storage of licenses, activations and the validation audit log.

Multi-row changes go through `LicenseStore.transaction(key)`, which
serializes work per license key (in-process lock plus a row lock on the
license) and commits or rolls back as a unit.
"""

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterator, List, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from database import Activation, License, ValidationLog, utcnow
from errors import DuplicateLicenseError, StorageError
from key_codec import validate_format

LICENSE_STATUSES = ("active", "inactive")


@dataclass
class ValidationLogEntry:
    license_key: Optional[str]
    machine_id: Optional[str]
    action: str
    success: bool
    outcome: str
    reason: str
    created_at: Optional[datetime] = None


class KeyedLock:
    """One lock per key; entries are dropped when nobody holds or waits on them."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        entry[0].acquire()
        try:
            yield
        finally:
            entry[0].release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]


class StoreTransaction:
    """Row operations for a single license key inside one database transaction."""

    def __init__(self, session: Session, license_key: str, clock: Callable[[], datetime]):
        self.session = session
        self.license_key = license_key
        self._clock = clock

    def get_license(self) -> Optional[License]:
        stmt = select(License).where(License.license_key == self.license_key).with_for_update()
        return self.session.execute(stmt).scalar_one_or_none()

    def get_activation(self, machine_id: str) -> Optional[Activation]:
        stmt = select(Activation).where(
            Activation.license_key == self.license_key,
            Activation.machine_id == machine_id,
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def insert_activation(self, machine_id: str) -> Activation:
        now = self._clock()
        activation = Activation(
            license_key=self.license_key,
            machine_id=machine_id,
            activated_at=now,
            last_validated_at=now,
        )
        self.session.add(activation)
        self.session.flush()
        return activation

    def delete_activation(self, machine_id: str) -> bool:
        result = self.session.execute(
            delete(Activation).where(
                Activation.license_key == self.license_key,
                Activation.machine_id == machine_id,
            )
        )
        return result.rowcount > 0

    def increment_activation_count(self) -> None:
        self.session.execute(
            update(License)
            .where(License.license_key == self.license_key)
            .values(current_activations=License.current_activations + 1)
        )

    def decrement_activation_count(self) -> None:
        # Never below zero
        self.session.execute(
            update(License)
            .where(License.license_key == self.license_key, License.current_activations > 0)
            .values(current_activations=License.current_activations - 1)
        )

    def touch_activation(self, activation_id: int) -> None:
        self.session.execute(
            update(Activation)
            .where(Activation.id == activation_id)
            .values(last_validated_at=self._clock())
        )


class LicenseStore:
    def __init__(
        self,
        session_factory: sessionmaker,
        logger: Optional[logging.Logger] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.logger = logger or logging.getLogger(__name__)
        self.clock = clock
        self._key_locks = KeyedLock()

    @contextmanager
    def transaction(self, license_key: str) -> Iterator[StoreTransaction]:
        """
        Open a serialized unit of work for `license_key`.

        Commits when the block exits normally; rolls back on any exception.
        Database failures surface as StorageError.
        """
        with self._key_locks.hold(license_key):
            session = self.session_factory()
            try:
                with session.begin():
                    yield StoreTransaction(session, license_key, self.clock)
            except SQLAlchemyError as exc:
                self.logger.error("License store transaction failed for %s: %s", license_key, exc)
                raise StorageError() from exc
            finally:
                session.close()

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = self.session_factory()
        try:
            yield session
        except SQLAlchemyError as exc:
            self.logger.error("License store query failed: %s", exc)
            raise StorageError() from exc
        finally:
            session.close()

    # Reads
    def get_license(self, license_key: str) -> Optional[License]:
        with self._session() as session:
            return session.execute(
                select(License).where(License.license_key == license_key)
            ).scalar_one_or_none()

    def get_activation(self, license_key: str, machine_id: str) -> Optional[Activation]:
        with self._session() as session:
            return session.execute(
                select(Activation).where(
                    Activation.license_key == license_key,
                    Activation.machine_id == machine_id,
                )
            ).scalar_one_or_none()

    def count_activations(self, license_key: str) -> int:
        with self._session() as session:
            return session.execute(
                select(func.count(Activation.id)).where(Activation.license_key == license_key)
            ).scalar_one()

    def list_licenses(self) -> List[License]:
        with self._session() as session:
            return list(session.execute(select(License).order_by(License.id)).scalars())

    def list_activations(self) -> List[Activation]:
        with self._session() as session:
            return list(session.execute(select(Activation).order_by(Activation.id)).scalars())

    def recent_validation_logs(self, limit: int = 10) -> List[ValidationLog]:
        with self._session() as session:
            stmt = select(ValidationLog).order_by(ValidationLog.id.desc()).limit(limit)
            return list(session.execute(stmt).scalars())

    # Writes
    def append_validation_log(self, entry: ValidationLogEntry) -> bool:
        """
        Append an audit record. A failure here is logged and reported as False,
        never raised: the audit trail must not decide the caller's outcome.
        """
        session = self.session_factory()
        try:
            with session.begin():
                session.add(ValidationLog(
                    license_key=entry.license_key,
                    machine_id=entry.machine_id,
                    action=entry.action,
                    success=entry.success,
                    outcome=entry.outcome,
                    reason=entry.reason,
                    created_at=entry.created_at or self.clock(),
                ))
            return True
        except SQLAlchemyError as exc:
            self.logger.warning("Error logging validation for %s: %s", entry.license_key, exc)
            return False
        finally:
            session.close()

    def create_license(
        self,
        license_key: str,
        max_activations: int,
        expires_at: Optional[datetime] = None,
        status: str = "active",
    ) -> License:
        checked = validate_format(license_key)
        if not checked.valid:
            raise ValueError(checked.error)
        if max_activations < 1:
            raise ValueError("max_activations must be at least 1")
        if status not in LICENSE_STATUSES:
            raise ValueError(f"Unknown license status: {status}")

        license = License(
            license_key=checked.key,
            status=status,
            max_activations=max_activations,
            current_activations=0,
            expires_at=expires_at,
            created_at=self.clock(),
        )
        session = self.session_factory()
        try:
            with session.begin():
                session.add(license)
        except IntegrityError as exc:
            raise DuplicateLicenseError(f"License key already exists: {checked.key}") from exc
        except SQLAlchemyError as exc:
            self.logger.error("Failed to create license %s: %s", checked.key, exc)
            raise StorageError() from exc
        finally:
            session.close()

        self.logger.info("License created: %s (max activations %d)", checked.key, max_activations)
        return license

    def set_license_status(self, license_key: str, status: str) -> bool:
        if status not in LICENSE_STATUSES:
            raise ValueError(f"Unknown license status: {status}")

        with self.transaction(license_key) as tx:
            license = tx.get_license()
            if license is None:
                return False
            license.status = status

        self.logger.info("License %s status set to %s", license_key, status)
        return True
