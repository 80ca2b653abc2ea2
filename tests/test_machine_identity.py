"""
Tests for machine id resolution and its storage fallbacks.
"""

import re

import pytest

from errors import IdentityStorageError
from machine_identity import (
    DataFileProvider,
    LocalStoreProvider,
    MachineIdentityResolver,
    VolatileProvider,
    generate_machine_id,
    get_system_info,
)

HEX32 = re.compile(r"^[a-f0-9]{32}$")


class BrokenProvider:
    name = "broken"
    persistent = True

    def __init__(self):
        self.calls = 0

    def available(self):
        return True

    def get_or_create(self, name):
        self.calls += 1
        raise IdentityStorageError("disk on fire")


class UnavailableProvider(BrokenProvider):
    name = "unavailable"

    def available(self):
        return False


def test_generated_ids_are_32_lowercase_hex():
    assert HEX32.match(generate_machine_id())


def test_resolves_from_local_store_and_persists_across_sessions(tmp_path):
    first = MachineIdentityResolver.for_directory(tmp_path).resolve()
    second = MachineIdentityResolver.for_directory(tmp_path).resolve()

    assert first.source == "local_store"
    assert first.degraded is False
    assert HEX32.match(first.value)
    assert second.value == first.value


def test_value_is_cached_within_a_session(tmp_path):
    provider = DataFileProvider(tmp_path)
    resolver = MachineIdentityResolver([provider])

    first = resolver.get_machine_id()
    (tmp_path / "machine.id").write_text("f" * 32)

    assert resolver.get_machine_id() == first


def test_corrupt_local_store_value_is_replaced(tmp_path):
    provider = LocalStoreProvider(database_path=tmp_path / "local.db")
    assert provider.available()
    original = provider.get_or_create("machine_id")

    from database import SystemConfig
    session = provider.session_factory()
    with session.begin():
        row = session.query(SystemConfig).filter_by(key="machine_id").one()
        row.value = "not-a-machine-id"
    session.close()

    repaired = provider.get_or_create("machine_id")
    assert HEX32.match(repaired)
    assert repaired != original
    assert provider.get_or_create("machine_id") == repaired


def test_data_file_is_read_created_and_repaired(tmp_path):
    provider = DataFileProvider(tmp_path)
    id_file = tmp_path / "machine.id"

    created = provider.get_or_create("machine_id")
    assert id_file.read_text() == created

    id_file.write_text("ABCDEF0123456789ABCDEF0123456789\n")
    assert provider.get_or_create("machine_id") == "abcdef0123456789abcdef0123456789"

    id_file.write_text("short")
    repaired = provider.get_or_create("machine_id")
    assert HEX32.match(repaired)
    assert id_file.read_text() == repaired


def test_undecodable_data_file_is_regenerated(tmp_path):
    id_file = tmp_path / "machine.id"
    id_file.write_bytes(b"\xff\xfe\x00garbage")
    resolver = MachineIdentityResolver([DataFileProvider(tmp_path), VolatileProvider()])

    resolved = resolver.resolve()

    assert resolved.source == "data_file"
    assert HEX32.match(resolved.value)
    assert id_file.read_text() == resolved.value


def test_falls_back_to_data_file_when_local_store_fails(tmp_path):
    broken = BrokenProvider()
    resolver = MachineIdentityResolver([broken, DataFileProvider(tmp_path), VolatileProvider()])

    resolved = resolver.resolve()

    assert broken.calls == 1
    assert resolved.source == "data_file"
    assert resolved.persistent is True
    assert (tmp_path / "machine.id").read_text() == resolved.value


def test_skips_providers_that_are_not_available(tmp_path):
    unavailable = UnavailableProvider()
    resolver = MachineIdentityResolver([unavailable, DataFileProvider(tmp_path)])

    assert resolver.resolve().source == "data_file"
    assert unavailable.calls == 0


def test_unwritable_data_directory_degrades_to_volatile_id(tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("")
    resolver = MachineIdentityResolver.for_directory(blocker / "data")

    resolved = resolver.resolve()

    assert resolved.source == "volatile"
    assert resolved.degraded is True
    assert HEX32.match(resolved.value)
    assert resolver.resolve().value == resolved.value


def test_all_providers_failing_raises():
    with pytest.raises(IdentityStorageError):
        MachineIdentityResolver([BrokenProvider()]).resolve()


def test_system_info_reports_basic_platform_facts():
    info = get_system_info()

    assert info["cpu_count"] >= 1
    assert info["total_memory_gb"] > 0
    assert "os_platform" in info
