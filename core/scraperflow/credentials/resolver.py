"""Just-in-time secret resolution for node execution."""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from scraperflow.credentials.storage import InMemoryStorage, SecretStorage, load_record
from scraperflow.errors import MissingSecretError

logger = logging.getLogger(__name__)


class SecretResolver:
    """
    Resolves a node's secret references to values.

    Called by the scheduler immediately before every execution attempt and
    never cached across nodes, so a rotated secret is picked up by the next
    attempt. Resolution fails closed: the first reference that cannot be
    resolved (unknown id, empty value, expired record) raises
    MissingSecretError naming the logical key.

    Example:
        resolver = SecretResolver(InMemoryStorage.from_values({"secret-1": "sk-live"}))
        secrets = await resolver.resolve({"apiKey": "secret-1"})
        # {"apiKey": "sk-live"}
    """

    def __init__(self, storage: SecretStorage | None = None):
        self._storage = storage or InMemoryStorage()

    @property
    def storage(self) -> SecretStorage:
        return self._storage

    async def resolve(self, secret_refs: dict[str, str]) -> dict[str, str]:
        """
        Resolve logical names to secret values.

        Args:
            secret_refs: Mapping of logical credential name -> secret id

        Returns:
            Mapping of logical credential name -> secret value

        Raises:
            MissingSecretError: if any reference cannot be resolved
        """
        resolved: dict[str, str] = {}
        now = datetime.now(UTC)
        for key, secret_id in secret_refs.items():
            record = await load_record(self._storage, secret_id)
            if record is None:
                raise MissingSecretError(key, secret_id)
            if record.is_expired(now):
                raise MissingSecretError(key, secret_id, reason="expired")
            value = record.get_value()
            if not value:
                raise MissingSecretError(key, secret_id, reason="empty value")
            record.last_used = now
            resolved[key] = value
        if resolved:
            logger.debug(f"Resolved {len(resolved)} secret(s): {sorted(resolved)}")
        return resolved
