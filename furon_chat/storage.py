"""
Custom Model Storage
====================

SQLite-backed list of user-defined endpoints. Model metadata lives in the
database; API keys go to the credential manager under ``custom:<id>`` and
are never written to the database.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Sequence
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

from .credentials import CONFIG_DIR, CUSTOM_KEY_PREFIX, get_credential_manager
from .providers import ApiFormat, CustomModel, coerce_custom_format

_COLUMNS = "id, name, base_url, model_id, api_format, description, created_at, updated_at"


class KeyStorageError(RuntimeError):
    """The credential manager refused to store a custom model's key"""


class KeyStore(Protocol):
    def get_api_key(self, provider: str) -> str | None: ...

    def set_credential(self, provider: str, api_key: str, validate: bool = True) -> bool: ...

    def delete_credential(self, provider: str) -> bool: ...


def get_storage_path() -> Path:
    """Get the storage directory path, creating it if needed."""
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    return CONFIG_DIR


def _row_to_model(row: tuple[Any, ...], api_key: str) -> CustomModel:
    return CustomModel(
        id=str(row[0]),
        name=str(row[1]),
        base_url=str(row[2]),
        model_id=str(row[3]),
        api_format=coerce_custom_format(row[4]),
        description=str(row[5]) if row[5] else None,
        created_at=datetime.fromisoformat(str(row[6])),
        updated_at=datetime.fromisoformat(str(row[7])),
        api_key=api_key,
    )


class CustomModelStore:
    """SQLite-based storage for custom models."""

    def __init__(self, db_path: Path | None = None, keys: KeyStore | None = None):
        if db_path is None:
            db_path = get_storage_path() / "custom_models.db"
        self.db_path = db_path
        self._keys = keys
        self._init_db()

    @property
    def keys(self) -> KeyStore:
        if self._keys is None:
            self._keys = get_credential_manager()
        return self._keys

    def _get_connection(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path)

    def _init_db(self) -> None:
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS custom_models (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    base_url TEXT NOT NULL,
                    model_id TEXT NOT NULL,
                    api_format TEXT NOT NULL,
                    description TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    position INTEGER NOT NULL DEFAULT 0
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_custom_models_position
                ON custom_models(position)
            """)
            conn.commit()

    def _key_for(self, model_id: str) -> str:
        return self.keys.get_api_key(f"{CUSTOM_KEY_PREFIX}{model_id}") or ""

    def _store_key(self, model_id: str, api_key: str) -> None:
        """Save (or with an empty key, clear) the key for a custom model."""
        provider = f"{CUSTOM_KEY_PREFIX}{model_id}"
        if not api_key:
            self.keys.delete_credential(provider)
            return
        if not self.keys.set_credential(provider, api_key, validate=False):
            raise KeyStorageError(f"Failed to store API key for custom model {model_id}")

    def list_models(self) -> list[CustomModel]:
        """All custom models in display order."""
        with self._get_connection() as conn:
            rows = conn.execute(
                f"SELECT {_COLUMNS} FROM custom_models ORDER BY position, created_at"  # noqa: S608
            ).fetchall()
        return [_row_to_model(row, self._key_for(str(row[0]))) for row in rows]

    def get_model(self, model_id: str) -> CustomModel | None:
        with self._get_connection() as conn:
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM custom_models WHERE id = ?",  # noqa: S608
                (model_id,),
            ).fetchone()
        if not row:
            return None
        return _row_to_model(row, self._key_for(model_id))

    def add_model(
        self,
        name: str,
        base_url: str,
        api_key: str,
        model_id: str,
        api_format: ApiFormat | str = ApiFormat.OPENAI,
        description: str | None = None,
    ) -> CustomModel:
        """
        Create and persist a new custom model.

        Raises KeyStorageError, without saving the model, if the key
        cannot be stored.
        """
        model = CustomModel.create(
            name=name,
            base_url=base_url,
            api_key=api_key,
            model_id=model_id,
            api_format=api_format,
            description=description,
        )
        self._store_key(model.id, api_key)

        with self._get_connection() as conn:
            (position,) = conn.execute(
                "SELECT COALESCE(MAX(position), -1) + 1 FROM custom_models"
            ).fetchone()
            conn.execute(
                """
                INSERT INTO custom_models
                    (id, name, base_url, model_id, api_format, description,
                     created_at, updated_at, position)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    model.id,
                    model.name,
                    model.base_url,
                    model.model_id,
                    model.api_format.value,
                    model.description,
                    model.created_at.isoformat(),
                    model.updated_at.isoformat(),
                    position,
                ),
            )
            conn.commit()

        return model

    def update_model(
        self,
        model_id: str,
        name: str | None = None,
        base_url: str | None = None,
        api_key: str | None = None,
        model_name: str | None = None,
        api_format: ApiFormat | str | None = None,
        description: str | None = None,
    ) -> bool:
        """
        Update fields of a custom model.

        ``model_name`` is the provider-side model id sent on the wire.
        Returns False if the model does not exist or nothing changed. An
        empty ``api_key`` clears the stored key; a key the credential
        manager refuses raises KeyStorageError.
        """
        updates: list[str] = []
        params: list[Any] = []

        if name is not None:
            updates.append("name = ?")
            params.append(name)
        if base_url is not None:
            updates.append("base_url = ?")
            params.append(base_url)
        if model_name is not None:
            updates.append("model_id = ?")
            params.append(model_name)
        if api_format is not None:
            updates.append("api_format = ?")
            params.append(coerce_custom_format(api_format).value)
        if description is not None:
            updates.append("description = ?")
            params.append(description or None)

        if not updates and api_key is None:
            return False

        updates.append("updated_at = ?")
        params.append(datetime.now().isoformat())
        params.append(model_id)

        with self._get_connection() as conn:
            cursor = conn.execute(
                f"UPDATE custom_models SET {', '.join(updates)} WHERE id = ?",  # noqa: S608
                params,
            )
            conn.commit()
            updated = cursor.rowcount > 0

        if updated and api_key is not None:
            self._store_key(model_id, api_key)
        return updated

    def delete_model(self, model_id: str) -> bool:
        """Delete a custom model and its stored key."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "DELETE FROM custom_models WHERE id = ?",
                (model_id,),
            )
            conn.commit()
            deleted = cursor.rowcount > 0

        if deleted:
            self.keys.delete_credential(f"{CUSTOM_KEY_PREFIX}{model_id}")
        return deleted

    def reorder_models(self, model_ids: Sequence[str]) -> None:
        """Persist a new display order. Ids not listed keep their relative order after the listed ones."""
        with self._get_connection() as conn:
            remaining = [
                row[0]
                for row in conn.execute(
                    "SELECT id FROM custom_models ORDER BY position, created_at"
                )
                if row[0] not in model_ids
            ]
            for position, model_id in enumerate([*model_ids, *remaining]):
                conn.execute(
                    "UPDATE custom_models SET position = ? WHERE id = ?",
                    (position, model_id),
                )
            conn.commit()


_store: CustomModelStore | None = None


def get_custom_model_store() -> CustomModelStore:
    """Get the global custom model store."""
    global _store
    if _store is None:
        _store = CustomModelStore()
    return _store
