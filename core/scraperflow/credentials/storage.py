"""
Secret storage backends.

The engine does not define how secrets are stored or encrypted; it only needs
something that can look a record up by id. Backends:

- InMemoryStorage: dict-backed, optionally loaded from a JSON file
- EnvVarStorage: maps secret ids to environment variables (with .env fallback)
- CompositeStorage: primary storage plus ordered fallbacks

``load`` may be synchronous or a coroutine; ``load_record`` awaits it when needed.
"""

from __future__ import annotations

import inspect
import json
import logging
import os
import re
from abc import ABC, abstractmethod
from pathlib import Path

from dotenv import dotenv_values
from pydantic import SecretStr

from scraperflow.credentials.models import SecretRecord, SecretType

logger = logging.getLogger(__name__)

ENV_PREFIX = "SCRAPERFLOW_SECRET_"


class SecretStorage(ABC):
    """Abstract secret storage backend."""

    @abstractmethod
    def load(self, secret_id: str) -> SecretRecord | None:
        """Return the record for ``secret_id`` or None when unknown."""

    def save(self, record: SecretRecord) -> None:
        raise NotImplementedError(f"{type(self).__name__} is read-only")

    def delete(self, secret_id: str) -> bool:
        raise NotImplementedError(f"{type(self).__name__} is read-only")

    def exists(self, secret_id: str) -> bool:
        record = self.load(secret_id)
        if inspect.isawaitable(record):
            if inspect.iscoroutine(record):
                record.close()
            raise TypeError(
                f"{type(self).__name__}.load is asynchronous; use 'await load_record(...)'"
            )
        return record is not None


async def load_record(storage: SecretStorage, secret_id: str) -> SecretRecord | None:
    """Load a record from a synchronous or asynchronous storage."""
    record = storage.load(secret_id)
    if inspect.isawaitable(record):
        record = await record
    return record


class InMemoryStorage(SecretStorage):
    """
    Dict-backed storage, used by tests and by the CLI's ``--secrets`` file.

    Usage:
        storage = InMemoryStorage.from_values({"secret-1": "sk-test"})
    """

    def __init__(self, records: list[SecretRecord] | None = None):
        self._records: dict[str, SecretRecord] = {}
        for record in records or []:
            self.save(record)

    @classmethod
    def from_values(cls, values: dict[str, str]) -> InMemoryStorage:
        return cls(
            [SecretRecord(id=sid, name=sid, value=SecretStr(value)) for sid, value in values.items()]
        )

    @classmethod
    def from_json_file(cls, path: str | Path) -> InMemoryStorage:
        """
        Load secrets from a JSON file.

        Accepts either a mapping ``{id: value}`` or a list of records shaped
        like the secrets manager's export (``id``, ``name``, ``type``,
        ``value``, ``expiresAt``...).
        """
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
        if isinstance(data, dict):
            return cls.from_values({str(k): str(v) for k, v in data.items()})
        records = []
        for item in data:
            records.append(
                SecretRecord(
                    id=item["id"],
                    name=item.get("name", item["id"]),
                    type=SecretType(item.get("type", SecretType.OTHER)),
                    value=SecretStr(item["value"]),
                    description=item.get("description", ""),
                    category=item.get("category", ""),
                    expires_at=item.get("expires_at") or item.get("expiresAt"),
                )
            )
        return cls(records)

    def load(self, secret_id: str) -> SecretRecord | None:
        return self._records.get(secret_id)

    def save(self, record: SecretRecord) -> None:
        self._records[record.id] = record

    def delete(self, secret_id: str) -> bool:
        return self._records.pop(secret_id, None) is not None

    def list_ids(self) -> list[str]:
        return list(self._records)


class EnvVarStorage(SecretStorage):
    """
    Read-only storage backed by environment variables.

    Each secret id maps to an environment variable, either explicitly via
    ``env_mapping`` or by convention: ``secret-1`` -> ``SCRAPERFLOW_SECRET_SECRET_1``.
    Values missing from the process environment are looked up in a ``.env``
    file (defaults to ``cwd/.env``).
    """

    def __init__(
        self,
        env_mapping: dict[str, str] | None = None,
        dotenv_path: Path | None = None,
    ):
        self._env_mapping = env_mapping or {}
        self._dotenv_path = dotenv_path

    def env_var_for(self, secret_id: str) -> str:
        if secret_id in self._env_mapping:
            return self._env_mapping[secret_id]
        return ENV_PREFIX + re.sub(r"[^A-Za-z0-9]", "_", secret_id).upper()

    def _read_dotenv(self, env_var: str) -> str | None:
        path = self._dotenv_path or Path.cwd() / ".env"
        if not path.exists():
            return None
        return dotenv_values(path).get(env_var)

    def load(self, secret_id: str) -> SecretRecord | None:
        env_var = self.env_var_for(secret_id)
        value = os.environ.get(env_var) or self._read_dotenv(env_var)
        if not value:
            return None
        return SecretRecord(id=secret_id, name=env_var, value=SecretStr(value))


class CompositeStorage(SecretStorage):
    """Primary storage with ordered fallbacks; writes go to the primary."""

    def __init__(self, primary: SecretStorage, fallbacks: list[SecretStorage] | None = None):
        self._primary = primary
        self._fallbacks = fallbacks or []

    def load(self, secret_id: str):
        """
        Return the first record found, in storage order.

        Stays synchronous while every backend is; from the first backend
        whose ``load`` is a coroutine onwards the lookup continues in an
        awaitable.
        """
        backends = [self._primary, *self._fallbacks]
        for i, storage in enumerate(backends):
            record = storage.load(secret_id)
            if inspect.isawaitable(record):
                return self._load_async(secret_id, record, backends[i + 1 :])
            if record is not None:
                return record
        return None

    async def _load_async(
        self, secret_id: str, pending, remaining: list[SecretStorage]
    ) -> SecretRecord | None:
        record = await pending
        for storage in remaining:
            if record is not None:
                break
            record = await load_record(storage, secret_id)
        return record

    def save(self, record: SecretRecord) -> None:
        self._primary.save(record)

    def delete(self, secret_id: str) -> bool:
        return self._primary.delete(secret_id)
