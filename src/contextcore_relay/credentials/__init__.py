"""
Scoped credential resolution for pipeline stages.
"""

from contextcore_relay.credentials.resolvers import (
    ChainSecretResolver,
    DirectorySecretResolver,
    EnvSecretResolver,
    MappingSecretResolver,
    ResolvedSecret,
    SecretResolver,
    default_resolver,
)
from contextcore_relay.credentials.scope import MASK, SecretScope

__all__ = [
    "ChainSecretResolver",
    "DirectorySecretResolver",
    "EnvSecretResolver",
    "MappingSecretResolver",
    "ResolvedSecret",
    "SecretResolver",
    "SecretScope",
    "MASK",
    "default_resolver",
]
