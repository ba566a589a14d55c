"""
Secret resolution for workflow nodes.

Nodes carry opaque secret references (``{"apiKey": "secret-1"}``), never raw
values. The resolver looks the ids up in a storage backend right before each
execution attempt.

Quick Start:
    from scraperflow.credentials import EnvVarStorage, SecretResolver

    resolver = SecretResolver(EnvVarStorage())
    secrets = await resolver.resolve({"apiKey": "rapidapi"})
    # reads SCRAPERFLOW_SECRET_RAPIDAPI from the environment or .env
"""

from .models import SecretRecord, SecretType
from .resolver import SecretResolver
from .storage import (
    CompositeStorage,
    EnvVarStorage,
    InMemoryStorage,
    SecretStorage,
    load_record,
)

__all__ = [
    # Resolver
    "SecretResolver",
    # Models
    "SecretRecord",
    "SecretType",
    # Storage backends
    "SecretStorage",
    "InMemoryStorage",
    "EnvVarStorage",
    "CompositeStorage",
    "load_record",
]
