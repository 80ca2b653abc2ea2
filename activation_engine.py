"""
License activation state machine.

Per (license key, machine id) pair the state is derived from stored rows:
NOT_FOUND, INACTIVE, EXPIRED, NOT_ACTIVATED_ON_THIS_MACHINE, ACTIVATED or
LIMIT_REACHED. Every operation returns an `ActivationOutcome`; nothing in
here raises across the component boundary.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from database import License, as_naive_utc, utcnow
from errors import OutcomeCode, StorageError
from key_codec import is_valid_machine_id, normalize_machine_id, validate_format
from license_store import LicenseStore, ValidationLogEntry

MSG_INVALID_KEY = "Invalid license key"
MSG_INACTIVE = "License is not active"
MSG_EXPIRED = "License has expired"
MSG_LIMIT_REACHED = "Activation limit reached. Deactivate another device first."
MSG_ALREADY_ACTIVATED = "License already activated on this device"
MSG_ACTIVATED = "License activated successfully"
MSG_NOT_ACTIVATED_HERE = "License not activated on this device"
MSG_VALID = "License is valid"
MSG_DEACTIVATED = "License deactivated"
MSG_ACTIVATION_NOT_FOUND = "Activation not found"
MSG_INVALID_MACHINE_ID = "Invalid machine ID format"
MSG_STORAGE = "License storage unavailable. Try again later."


@dataclass
class ActivationOutcome:
    code: OutcomeCode
    message: str
    activation_id: Optional[int] = None
    status: Optional[str] = None
    expires_at: Optional[datetime] = None

    @property
    def success(self) -> bool:
        return self.code == OutcomeCode.OK


class ActivationEngine:
    def __init__(
        self,
        store: LicenseStore,
        logger: Optional[logging.Logger] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.logger = logger or logging.getLogger(__name__)
        self.clock = clock

    def activate(self, license_key, machine_id) -> ActivationOutcome:
        checked = self._check_inputs(license_key, machine_id)
        if isinstance(checked, ActivationOutcome):
            return checked
        key, machine_id = checked

        self.logger.info("Activation request: %s on %s", key, machine_id)
        try:
            with self.store.transaction(key) as tx:
                license = tx.get_license()
                if license is None:
                    outcome = ActivationOutcome(OutcomeCode.NOT_FOUND, MSG_INVALID_KEY)
                    reason = "License not found"
                elif license.status != "active":
                    outcome = ActivationOutcome(OutcomeCode.LICENSE_INACTIVE, MSG_INACTIVE)
                    reason = "License inactive"
                elif self._is_expired(license):
                    outcome = ActivationOutcome(OutcomeCode.LICENSE_EXPIRED, MSG_EXPIRED)
                    reason = "License expired"
                else:
                    outcome, reason = self._bind(tx, license, machine_id)
        except StorageError:
            return self._storage_failure("activate", key, machine_id)

        self._audit("activate", key, machine_id, outcome, reason)
        return outcome

    def _bind(self, tx, license: License, machine_id: str):
        """Runs inside the per-key transaction: re-validate, check the limit, insert."""
        existing = tx.get_activation(machine_id)
        if existing is not None:
            tx.touch_activation(existing.id)
            self.logger.info("Re-activation for existing machine %s", machine_id)
            outcome = ActivationOutcome(
                OutcomeCode.OK, MSG_ALREADY_ACTIVATED, activation_id=existing.id
            )
            return outcome, "Re-validation successful"

        if license.current_activations >= license.max_activations:
            outcome = ActivationOutcome(OutcomeCode.LIMIT_REACHED, MSG_LIMIT_REACHED)
            return outcome, "Activation limit reached"

        activation = tx.insert_activation(machine_id)
        tx.increment_activation_count()
        self.logger.info("New activation %s for %s", activation.id, license.license_key)
        outcome = ActivationOutcome(OutcomeCode.OK, MSG_ACTIVATED, activation_id=activation.id)
        return outcome, "Activation successful"

    def validate(self, license_key, machine_id) -> ActivationOutcome:
        checked = self._check_inputs(license_key, machine_id)
        if isinstance(checked, ActivationOutcome):
            return checked
        key, machine_id = checked

        self.logger.debug("Validation request: %s on %s", key, machine_id)
        try:
            with self.store.transaction(key) as tx:
                license = tx.get_license()
                activation = tx.get_activation(machine_id) if license is not None else None
                if license is None:
                    outcome = ActivationOutcome(OutcomeCode.NOT_FOUND, "License not found")
                    reason = "License not found"
                elif activation is None:
                    outcome = ActivationOutcome(
                        OutcomeCode.NOT_ACTIVATED_ON_MACHINE, MSG_NOT_ACTIVATED_HERE
                    )
                    reason = "Not activated on this machine"
                elif self._is_expired(license):
                    outcome = ActivationOutcome(OutcomeCode.LICENSE_EXPIRED, MSG_EXPIRED)
                    reason = "License expired"
                else:
                    tx.touch_activation(activation.id)
                    outcome = ActivationOutcome(
                        OutcomeCode.OK,
                        MSG_VALID,
                        activation_id=activation.id,
                        status=license.status,
                        expires_at=license.expires_at,
                    )
                    reason = "Validation successful"
        except StorageError:
            return self._storage_failure("validate", key, machine_id)

        self._audit("validate", key, machine_id, outcome, reason)
        return outcome

    def deactivate(self, license_key, machine_id) -> ActivationOutcome:
        checked = self._check_inputs(license_key, machine_id)
        if isinstance(checked, ActivationOutcome):
            return checked
        key, machine_id = checked

        self.logger.info("Deactivation request: %s on %s", key, machine_id)
        try:
            with self.store.transaction(key) as tx:
                if tx.delete_activation(machine_id):
                    tx.decrement_activation_count()
                    outcome = ActivationOutcome(OutcomeCode.OK, MSG_DEACTIVATED)
                    reason = "Deactivation successful"
                else:
                    outcome = ActivationOutcome(OutcomeCode.NOT_FOUND, MSG_ACTIVATION_NOT_FOUND)
                    reason = "Activation not found"
        except StorageError:
            return self._storage_failure("deactivate", key, machine_id)

        self._audit("deactivate", key, machine_id, outcome, reason)
        return outcome

    def _check_inputs(self, license_key, machine_id):
        key_check = validate_format(license_key)
        if not key_check.valid:
            return ActivationOutcome(OutcomeCode.FORMAT_ERROR, key_check.error)
        if not is_valid_machine_id(machine_id):
            return ActivationOutcome(OutcomeCode.FORMAT_ERROR, MSG_INVALID_MACHINE_ID)
        return key_check.key, normalize_machine_id(machine_id)

    def _is_expired(self, license: License) -> bool:
        expires_at = as_naive_utc(license.expires_at)
        return expires_at is not None and expires_at < as_naive_utc(self.clock())

    def _storage_failure(self, action: str, key: str, machine_id: str) -> ActivationOutcome:
        outcome = ActivationOutcome(OutcomeCode.STORAGE_ERROR, MSG_STORAGE)
        self._audit(action, key, machine_id, outcome, "Storage failure")
        return outcome

    def _audit(self, action: str, key: str, machine_id: str, outcome: ActivationOutcome, reason: str):
        if not outcome.success:
            self.logger.warning("%s rejected for %s on %s: %s", action, key, machine_id, reason)
        self.store.append_validation_log(ValidationLogEntry(
            license_key=key,
            machine_id=machine_id,
            action=action,
            success=outcome.success,
            outcome=outcome.code.value,
            reason=reason,
            created_at=as_naive_utc(self.clock()),
        ))
