"""
Secret resolution for node configurations.

Node configs never carry credential values; they carry references of the
form ``{"$secret": "NAME"}``. References are resolved by a SecretResolver
only inside a node dispatch, and the resolved values live only in the
config handed to that one dispatch call.

Usage:
    resolver = EnvSecretResolver(settings)
    value = await resolver.resolve(SecretReference("OPENAI_API_KEY"))
"""

import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

from flowengine.constants import SECRET_MARKER
from flowengine.core.config import Settings
from flowengine.core.errors import ExecutionError
from flowengine.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class SecretReference:
    """Opaque handle to a credential. Safe to persist and log."""
    name: str

    @classmethod
    def from_value(cls, value: Any) -> Optional["SecretReference"]:
        """Parse ``{"$secret": "NAME"}``; anything else is not a reference."""
        if isinstance(value, dict) and len(value) == 1 and isinstance(value.get(SECRET_MARKER), str):
            return cls(value[SECRET_MARKER])
        return None

    def to_dict(self) -> Dict[str, str]:
        return {SECRET_MARKER: self.name}


class SecretResolver(ABC):
    """Abstract base class for secret resolution backends."""

    @abstractmethod
    async def resolve(self, reference: SecretReference) -> str:
        """Return the secret value.

        Raises:
            ExecutionError: SECRET_UNAVAILABLE when the secret is unknown.
        """
        pass

    async def resolve_config(self, config: Any) -> Any:
        """Copy of ``config`` with every secret reference replaced by its value."""
        reference = SecretReference.from_value(config)
        if reference is not None:
            return await self.resolve(reference)
        if isinstance(config, dict):
            return {k: await self.resolve_config(v) for k, v in config.items()}
        if isinstance(config, list):
            return [await self.resolve_config(item) for item in config]
        return config


def find_secret_references(config: Any) -> List[SecretReference]:
    """All references inside ``config``, in traversal order."""
    reference = SecretReference.from_value(config)
    if reference is not None:
        return [reference]
    found: List[SecretReference] = []
    if isinstance(config, dict):
        for value in config.values():
            found.extend(find_secret_references(value))
    elif isinstance(config, list):
        for item in config:
            found.extend(find_secret_references(item))
    return found


def _unavailable(name: str) -> ExecutionError:
    return ExecutionError(f"Secret '{name}' is not available", code="SECRET_UNAVAILABLE")


class EnvSecretResolver(SecretResolver):
    """Environment variables first, then a matching Settings field.

    ``OPENAI_API_KEY`` resolves from the environment or ``settings.openai_api_key``.
    """

    def __init__(self, settings: Optional[Settings] = None, environ: Optional[Mapping[str, str]] = None):
        self.settings = settings
        self.environ = environ if environ is not None else os.environ

    async def resolve(self, reference: SecretReference) -> str:
        value = self.environ.get(reference.name)
        if not value and self.settings is not None:
            value = getattr(self.settings, reference.name.lower(), None)
        if not value or not isinstance(value, str):
            logger.warning("Secret unavailable", secret=reference.name)
            raise _unavailable(reference.name)
        return value


class StaticSecretResolver(SecretResolver):
    """Fixed mapping of names to values (tests, embedded use)."""

    def __init__(self, secrets: Optional[Mapping[str, str]] = None):
        self._secrets = dict(secrets or {})

    async def resolve(self, reference: SecretReference) -> str:
        if reference.name not in self._secrets:
            logger.warning("Secret unavailable", secret=reference.name)
            raise _unavailable(reference.name)
        return self._secrets[reference.name]
