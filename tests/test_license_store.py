"""
Tests for the license store and its per-key transactions.
"""

from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from conftest import MACHINE_A, MACHINE_B, SCENARIO_KEY
from database import utcnow
from errors import DuplicateLicenseError, StorageError
from license_store import ValidationLogEntry


class TestCreateLicense:
    def test_create_normalizes_key(self, store):
        license = store.create_license("ps-a4b3-c8d9-e2f1", max_activations=3)

        assert license.license_key == SCENARIO_KEY
        assert store.get_license(SCENARIO_KEY).max_activations == 3
        assert store.get_license(SCENARIO_KEY).current_activations == 0
        assert store.get_license(SCENARIO_KEY).expires_at is None

    def test_duplicate_key_is_rejected(self, store, scenario_license):
        with pytest.raises(DuplicateLicenseError):
            store.create_license(SCENARIO_KEY, max_activations=1)

    @pytest.mark.parametrize("key, max_activations", [
        ("not-a-key", 1),
        (SCENARIO_KEY, 0),
    ])
    def test_invalid_arguments(self, store, key, max_activations):
        with pytest.raises(ValueError):
            store.create_license(key, max_activations=max_activations)

    def test_set_status(self, store, scenario_license):
        assert store.set_license_status(SCENARIO_KEY, "inactive") is True
        assert store.get_license(SCENARIO_KEY).status == "inactive"
        assert store.set_license_status("PS-FFFF-FFFF-FFFF", "inactive") is False


class TestTransaction:
    def test_insert_and_increment_commit_together(self, store, scenario_license):
        with store.transaction(SCENARIO_KEY) as tx:
            activation = tx.insert_activation(MACHINE_A)
            tx.increment_activation_count()

        assert activation.id is not None
        assert store.get_activation(SCENARIO_KEY, MACHINE_A) is not None
        assert store.get_license(SCENARIO_KEY).current_activations == 1
        assert store.count_activations(SCENARIO_KEY) == 1

    def test_failure_rolls_back_every_row(self, store, scenario_license):
        with pytest.raises(RuntimeError):
            with store.transaction(SCENARIO_KEY) as tx:
                tx.insert_activation(MACHINE_A)
                tx.increment_activation_count()
                raise RuntimeError("boom")

        assert store.get_activation(SCENARIO_KEY, MACHINE_A) is None
        assert store.get_license(SCENARIO_KEY).current_activations == 0

    def test_database_errors_become_storage_errors(self, store, scenario_license):
        with pytest.raises(StorageError):
            with store.transaction(SCENARIO_KEY) as tx:
                tx.insert_activation(MACHINE_A)
                tx.insert_activation(MACHINE_A)

        assert store.count_activations(SCENARIO_KEY) == 0

    def test_decrement_never_goes_negative(self, store, scenario_license):
        with store.transaction(SCENARIO_KEY) as tx:
            tx.decrement_activation_count()

        assert store.get_license(SCENARIO_KEY).current_activations == 0

    def test_delete_reports_whether_a_row_matched(self, store, scenario_license):
        with store.transaction(SCENARIO_KEY) as tx:
            tx.insert_activation(MACHINE_A)

        with store.transaction(SCENARIO_KEY) as tx:
            assert tx.delete_activation(MACHINE_B) is False
            assert tx.delete_activation(MACHINE_A) is True

    def test_touch_updates_last_validated(self, store, scenario_license):
        earlier = utcnow() - timedelta(days=3)
        store.clock = lambda: earlier
        with store.transaction(SCENARIO_KEY) as tx:
            activation_id = tx.insert_activation(MACHINE_A).id

        store.clock = utcnow
        with store.transaction(SCENARIO_KEY) as tx:
            tx.touch_activation(activation_id)

        activation = store.get_activation(SCENARIO_KEY, MACHINE_A)
        assert activation.activated_at == earlier
        assert activation.last_validated_at > earlier


class TestValidationLog:
    def test_append_and_read_back(self, store):
        entry = ValidationLogEntry(SCENARIO_KEY, MACHINE_A, "activate", True, "OK", "Activation successful")

        assert store.append_validation_log(entry) is True

        logs = store.recent_validation_logs(5)
        assert len(logs) == 1
        assert logs[0].reason == "Activation successful"
        assert logs[0].created_at is not None

    def test_append_failure_is_swallowed(self, store, monkeypatch):
        class LockedSession:
            def begin(self):
                raise OperationalError("INSERT", {}, Exception("database is locked"))

            def close(self):
                pass

        monkeypatch.setattr(store, "session_factory", LockedSession)
        entry = ValidationLogEntry(SCENARIO_KEY, MACHINE_A, "validate", False, "NOT_FOUND", "License not found")

        assert store.append_validation_log(entry) is False
