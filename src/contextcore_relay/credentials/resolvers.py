"""
Secret resolution backends.

A resolver turns a named SecretRef into a ResolvedSecret. Storage is opaque:
each backend only decides which shape a stored value has.
"""

from __future__ import annotations

import json
import logging
import os
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Mapping, Optional, Tuple, Union

from contextcore_relay.config import get_config
from contextcore_relay.errors import ConfigurationError, SecretNotFound, SecretShapeMismatch
from contextcore_relay.models import SecretRef, SecretShape

logger = logging.getLogger(__name__)

StoredValue = Union[str, bytes, Tuple[str, str]]


@dataclass(frozen=True)
class ResolvedSecret:
    """A usable credential value. Values never appear in repr."""

    name: str
    shape: SecretShape
    text: Optional[str] = field(default=None, repr=False)
    username: Optional[str] = field(default=None, repr=False)
    password: Optional[str] = field(default=None, repr=False)
    content: Optional[bytes] = field(default=None, repr=False)

    @classmethod
    def from_value(cls, name: str, value: StoredValue) -> "ResolvedSecret":
        """Infer the shape from a Python value: tuple pair, bytes file, or str."""
        if isinstance(value, tuple):
            if len(value) != 2:
                raise ConfigurationError(f"secret '{name}' pair must have exactly two items")
            username, password = value
            return cls(name, SecretShape.USERNAME_PASSWORD, username=username, password=password)
        if isinstance(value, bytes):
            return cls(name, SecretShape.FILE, content=value)
        return cls(name, SecretShape.STRING, text=value)


class SecretResolver(ABC):
    """Base class for secret backends."""

    @abstractmethod
    def lookup(self, name: str) -> Optional[ResolvedSecret]:
        """
        Look up a stored secret.

        Args:
            name: Secret name

        Returns:
            The stored secret, or None if this backend does not know it
        """
        ...

    def resolve(self, ref: SecretRef) -> ResolvedSecret:
        """
        Resolve a reference, checking its declared shape.

        Raises:
            SecretNotFound: No stored value for ``ref.name``
            SecretShapeMismatch: Stored shape differs from ``ref.shape``
        """
        secret = self.lookup(ref.name)
        if secret is None:
            raise SecretNotFound(ref.name)
        if secret.shape != ref.shape:
            raise SecretShapeMismatch(ref.name, ref.shape.value, secret.shape.value)
        return secret


class MappingSecretResolver(SecretResolver):
    """In-memory backend: ``(user, password)`` tuples, ``bytes`` files, ``str`` strings."""

    def __init__(self, values: Optional[Mapping[str, StoredValue]] = None) -> None:
        self._values = dict(values or {})

    def lookup(self, name: str) -> Optional[ResolvedSecret]:
        if name not in self._values:
            return None
        return ResolvedSecret.from_value(name, self._values[name])


_ENV_NAME_RE = re.compile(r"[^A-Za-z0-9]+")


class EnvSecretResolver(SecretResolver):
    """
    Environment-variable backend.

    For a secret ``registry`` and prefix ``RELAY_SECRET_``:

    - ``RELAY_SECRET_REGISTRY`` holds a string
    - ``RELAY_SECRET_REGISTRY_USR`` and ``RELAY_SECRET_REGISTRY_PSW`` hold a pair
    - ``RELAY_SECRET_REGISTRY_FILE`` holds a path whose contents are a file secret
    """

    def __init__(
        self,
        prefix: Optional[str] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.prefix = prefix if prefix is not None else get_config().secret_prefix
        self._environ = environ if environ is not None else os.environ

    def _key(self, name: str) -> str:
        return self.prefix + _ENV_NAME_RE.sub("_", name).strip("_").upper()

    def lookup(self, name: str) -> Optional[ResolvedSecret]:
        key = self._key(name)
        username = self._environ.get(f"{key}_USR")
        password = self._environ.get(f"{key}_PSW")
        if username is not None and password is not None:
            return ResolvedSecret.from_value(name, (username, password))

        file_path = self._environ.get(f"{key}_FILE")
        if file_path is not None:
            try:
                content = Path(file_path).read_bytes()
            except OSError as e:
                logger.warning(f"Secret file for {name} unreadable: {e}")
                return None
            return ResolvedSecret.from_value(name, content)

        text = self._environ.get(key)
        if text is not None:
            return ResolvedSecret.from_value(name, text)
        return None


class DirectorySecretResolver(SecretResolver):
    """
    Directory backend, one entry per secret.

    - ``<name>.pair.json`` holds ``{"username": ..., "password": ...}``
    - ``<name>.file`` holds raw file content
    - ``<name>`` holds a string (one trailing newline is stripped)
    """

    def __init__(self, directory: Union[str, Path, None] = None) -> None:
        directory = directory or get_config().secrets_dir
        if not directory:
            raise ConfigurationError("no secrets directory configured (RELAY_SECRETS_DIR)")
        self.directory = Path(directory).expanduser()

    def lookup(self, name: str) -> Optional[ResolvedSecret]:
        if not name or "/" in name or "\\" in name or name.startswith("."):
            return None

        pair_path = self.directory / f"{name}.pair.json"
        if pair_path.is_file():
            try:
                data = json.loads(pair_path.read_text(encoding="utf-8"))
                return ResolvedSecret.from_value(name, (data["username"], data["password"]))
            except (OSError, ValueError, KeyError, TypeError) as e:
                raise ConfigurationError(f"invalid pair secret '{name}': {e}") from e

        file_path = self.directory / f"{name}.file"
        if file_path.is_file():
            return ResolvedSecret.from_value(name, file_path.read_bytes())

        text_path = self.directory / name
        if text_path.is_file():
            text = text_path.read_text(encoding="utf-8")
            if text.endswith("\n"):
                text = text[:-1]
            return ResolvedSecret.from_value(name, text)

        return None


class ChainSecretResolver(SecretResolver):
    """Tries each backend in order; the first one that knows the name wins."""

    def __init__(self, resolvers: Iterable[SecretResolver]) -> None:
        self.resolvers: List[SecretResolver] = list(resolvers)

    def lookup(self, name: str) -> Optional[ResolvedSecret]:
        for resolver in self.resolvers:
            secret = resolver.lookup(name)
            if secret is not None:
                return secret
        return None


def default_resolver() -> SecretResolver:
    """Environment backend, followed by the secrets directory when one is configured."""
    config = get_config()
    resolvers: List[SecretResolver] = [EnvSecretResolver(config.secret_prefix)]
    if config.secrets_dir:
        resolvers.append(DirectorySecretResolver(config.secrets_dir))
    return ChainSecretResolver(resolvers)
