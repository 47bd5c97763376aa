"""
Tests for custom model storage
==============================
"""

import os
import sqlite3
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from furon_chat.credentials import CredentialManager, EnvironmentBackend
from furon_chat.providers import ApiFormat
from furon_chat.storage import CustomModelStore, KeyStorageError


class FakeKeys:
    """Dict-backed stand-in for the credential manager"""

    def __init__(self):
        self.keys = {}

    def get_api_key(self, provider):
        return self.keys.get(provider)

    def set_credential(self, provider, api_key, validate=True):
        self.keys[provider] = api_key
        return True

    def delete_credential(self, provider):
        self.keys.pop(provider, None)
        return True


@pytest.fixture
def keys():
    return FakeKeys()


@pytest.fixture
def store(tmp_path, keys):
    return CustomModelStore(db_path=tmp_path / "custom_models.db", keys=keys)


class TestCustomModelStore:
    """Test CRUD and ordering of custom models"""

    def test_add_and_get(self, store, keys):
        """Added models come back with their key"""
        model = store.add_model(
            name="Local",
            base_url="http://localhost:8080/v1",
            api_key="local-key-123",
            model_id="llama3",
            api_format="anthropic",
            description="On my laptop",
        )

        loaded = store.get_model(model.id)
        assert loaded.name == "Local"
        assert loaded.api_key == "local-key-123"
        assert loaded.api_format is ApiFormat.ANTHROPIC
        assert loaded.description == "On my laptop"
        assert keys.keys == {f"custom:{model.id}": "local-key-123"}

    def test_key_not_in_database(self, store):
        """The database never holds the API key"""
        store.add_model("Local", "http://h/v1", "never-in-sqlite", "m")
        conn = sqlite3.connect(store.db_path)
        try:
            rows = conn.execute("SELECT * FROM custom_models").fetchall()
        finally:
            conn.close()
        assert rows
        assert all("never-in-sqlite" not in str(value) for row in rows for value in row)

    def test_unknown_format_becomes_openai(self, store):
        """Formats outside the custom set are stored as openai"""
        model = store.add_model("X", "http://h", "k", "m", api_format="legacy")
        assert store.get_model(model.id).api_format is ApiFormat.OPENAI

    def test_get_missing(self, store):
        """Unknown ids return None"""
        assert store.get_model("custom-0-nothing") is None

    def test_list_in_insertion_order(self, store):
        """New models are appended"""
        first = store.add_model("A", "http://a", "k", "a")
        second = store.add_model("B", "http://b", "k", "b")
        assert [m.id for m in store.list_models()] == [first.id, second.id]

    def test_update(self, store, keys):
        """Fields and key can be updated"""
        model = store.add_model("A", "http://a", "old-key", "a")
        assert store.update_model(
            model.id, name="Renamed", model_name="a-2", api_format="gemini", api_key="new-key"
        )

        loaded = store.get_model(model.id)
        assert loaded.name == "Renamed"
        assert loaded.model_id == "a-2"
        assert loaded.api_format is ApiFormat.GEMINI
        assert loaded.api_key == "new-key"
        assert loaded.updated_at >= model.updated_at

    def test_update_missing_or_empty(self, store):
        """Nothing to update or no such model returns False"""
        model = store.add_model("A", "http://a", "k", "a")
        assert not store.update_model(model.id)
        assert not store.update_model("custom-0-nothing", name="x")

    def test_delete(self, store, keys):
        """Deleting removes the row and the stored key"""
        model = store.add_model("A", "http://a", "k", "a")
        assert store.delete_model(model.id)
        assert store.get_model(model.id) is None
        assert keys.keys == {}
        assert not store.delete_model(model.id)

    def test_reorder(self, store):
        """Listed ids move to the front, the rest keep their order"""
        a = store.add_model("A", "http://a", "k", "a")
        b = store.add_model("B", "http://b", "k", "b")
        c = store.add_model("C", "http://c", "k", "c")

        store.reorder_models([c.id, a.id])
        assert [m.id for m in store.list_models()] == [c.id, a.id, b.id]


class RefusingKeys(FakeKeys):
    """Key store whose writes always fail"""

    def set_credential(self, provider, api_key, validate=True):
        return False


class TestCustomModelKeys:
    """Test key handling through a real credential manager"""

    @pytest.fixture
    def env_store(self, tmp_path, monkeypatch):
        monkeypatch.setattr(os, "environ", dict(os.environ))
        manager = CredentialManager(backends=[EnvironmentBackend()])
        return CustomModelStore(db_path=tmp_path / "custom_models.db", keys=manager)

    def test_short_key_is_kept(self, env_store):
        """Local endpoints with short tokens keep their key"""
        model = env_store.add_model("local", "http://localhost:8080/v1", "tok-123", "llama")
        assert env_store.get_model(model.id).api_key == "tok-123"

    def test_update_short_key(self, env_store):
        """A short replacement key is stored too"""
        model = env_store.add_model("local", "http://localhost:8080/v1", "tok-123", "llama")
        assert env_store.update_model(model.id, api_key="tok-456")
        assert env_store.get_model(model.id).api_key == "tok-456"

    def test_empty_key(self, env_store):
        """Models without a key are saved with an empty key"""
        model = env_store.add_model("local", "http://localhost:8080/v1", "", "llama")
        assert env_store.get_model(model.id).api_key == ""

    def test_update_to_empty_key_clears_it(self, env_store):
        """An empty key on update removes the stored key"""
        model = env_store.add_model("local", "http://localhost:8080/v1", "tok-123", "llama")
        assert env_store.update_model(model.id, api_key="")
        assert env_store.get_model(model.id).api_key == ""

    def test_refused_key_is_an_error(self, tmp_path):
        """A key the store refuses raises and the model is not saved"""
        store = CustomModelStore(db_path=tmp_path / "custom_models.db", keys=RefusingKeys())
        with pytest.raises(KeyStorageError):
            store.add_model("local", "http://localhost:8080/v1", "tok-123", "llama")
        assert store.list_models() == []
