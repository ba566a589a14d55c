"""Secret record model.

Values are held as ``SecretStr`` so they never leak through ``repr()``,
logging, or ``model_dump()`` without an explicit ``get_secret_value()``.
"""

from datetime import UTC, datetime
from enum import StrEnum

from pydantic import BaseModel, Field, SecretStr


class SecretType(StrEnum):
    """Kinds of secrets the secrets manager distinguishes."""

    API_KEY = "api_key"
    PASSWORD = "password"
    TOKEN = "token"
    CONNECTION_STRING = "connection_string"
    CERTIFICATE = "certificate"
    OTHER = "other"


class SecretRecord(BaseModel):
    """
    A stored secret, addressed by its opaque ``id``.

    Nodes reference secrets only through ``id``; the resolver turns the
    reference into ``value`` immediately before execution.
    """

    id: str
    name: str = ""
    type: SecretType = SecretType.OTHER
    value: SecretStr
    description: str = ""
    category: str = ""
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    last_used: datetime | None = None
    expires_at: datetime | None = None

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        now = now or datetime.now(UTC)
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=UTC)
        return expires_at <= now

    def get_value(self) -> str:
        return self.value.get_secret_value()
