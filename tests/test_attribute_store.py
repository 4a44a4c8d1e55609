"""Tests for the identity attribute stores."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from restclaim.persistence.repositories import (
    AttributeStore,
    AttributeStoreError,
    InMemoryAttributeStore,
    SqliteAttributeStore,
    create_attribute_store,
)
from restclaim.settings import EngineSettings


@pytest.fixture
def sqlite_store(tmp_path: Path) -> Iterator[SqliteAttributeStore]:
    store = create_attribute_store(str(tmp_path / "attrs" / "attributes.sqlite3"))
    yield store
    store.close()


@pytest.fixture(params=["memory", "sqlite"])
def store(request: pytest.FixtureRequest, tmp_path: Path) -> Iterator[AttributeStore]:
    if request.param == "memory":
        yield InMemoryAttributeStore()
        return
    sqlite = SqliteAttributeStore(str(tmp_path / "attributes.sqlite3"))
    yield sqlite
    sqlite.close()


class TestAttributeStoreContract:
    def test_missing_attribute_is_empty(self, store: AttributeStore) -> None:
        assert store.get_attribute("user-001", "role") == []

    def test_set_then_get(self, store: AttributeStore) -> None:
        store.set_attribute("user-001", "groups", ["a", "b"])

        assert store.get_attribute("user-001", "groups") == ["a", "b"]

    def test_set_replaces_values(self, store: AttributeStore) -> None:
        store.set_attribute("user-001", "groups", ["a", "b"])
        store.set_attribute("user-001", "groups", ["c"])

        assert store.get_attribute("user-001", "groups") == ["c"]

    def test_identities_are_isolated(self, store: AttributeStore) -> None:
        store.set_attribute("user-001", "role", ["admin"])

        assert store.get_attribute("user-002", "role") == []


class TestSqliteAttributeStore:
    def test_creates_parent_directory(
        self, sqlite_store: SqliteAttributeStore, tmp_path: Path
    ) -> None:
        sqlite_store.set_attribute("user-001", "role", ["admin"])

        assert (tmp_path / "attrs" / "attributes.sqlite3").exists()

    def test_values_survive_reopen(self, tmp_path: Path) -> None:
        path = str(tmp_path / "attributes.sqlite3")
        first = SqliteAttributeStore(path)
        first.set_attribute("user-001", "role", ["admin"])
        first.close()

        second = SqliteAttributeStore(path)
        try:
            assert second.get_attribute("user-001", "role") == ["admin"]
        finally:
            second.close()

    def test_directory_path_rejected(self, tmp_path: Path) -> None:
        store = SqliteAttributeStore(str(tmp_path))

        with pytest.raises(AttributeStoreError, match="directory"):
            store.get_attribute("user-001", "role")

    def test_env_path_used_by_default(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        path = tmp_path / "from-env.sqlite3"
        monkeypatch.setenv("RESTCLAIM_ATTRIBUTE_DB_PATH", str(path))

        store = create_attribute_store()
        store.set_attribute("user-001", "role", ["admin"])
        store.close()

        assert path.exists()

    def test_settings_path_used_by_default(self, tmp_path: Path) -> None:
        path = tmp_path / "from-settings.sqlite3"

        store = create_attribute_store(settings=EngineSettings(attribute_db_path=str(path)))
        store.set_attribute("user-001", "role", ["admin"])
        store.close()

        assert path.exists()


class TestInMemoryAttributeStore:
    def test_snapshot_and_clear(self) -> None:
        store = InMemoryAttributeStore()
        store.set_attribute("user-001", "role", ["admin"])
        store.set_attribute("user-002", "role", ["guest"])

        snapshot = store.attributes_of("user-001")
        snapshot["role"].append("mutated")
        store.clear()

        assert snapshot == {"role": ["admin", "mutated"]}
        assert store.attributes_of("user-001") == {}
