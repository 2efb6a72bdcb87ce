"""PULSE — Connector Registry.

An explicit table from provider id to integration definition, built once
at startup and handed to the sync engine. Nothing registers itself on
import.
"""

from typing import Dict, Iterable, List, Optional

from pulse.connectors.base import IntegrationDefinition
from pulse.core.logging import get_logger

logger = get_logger("connectors.registry")


class UnknownProviderError(KeyError):
    """Raised when no integration is registered under a provider id."""

    def __init__(self, provider_id: str):
        self.provider_id = provider_id
        super().__init__(provider_id)

    def __str__(self) -> str:
        return f'Integration "{self.provider_id}" not found'


class DuplicateProviderError(ValueError):
    """Raised when two integrations claim the same id."""


class ConnectorRegistry:
    def __init__(self, definitions: Iterable[IntegrationDefinition] = ()):
        self._definitions: Dict[str, IntegrationDefinition] = {}
        for definition in definitions:
            self.register(definition)

    def register(self, definition: IntegrationDefinition) -> None:
        if definition.id in self._definitions:
            raise DuplicateProviderError(f'Integration "{definition.id}" is already registered')
        self._definitions[definition.id] = definition
        logger.info(f"Registered integration {definition.id}", extra={"provider_id": definition.id})

    def get(self, provider_id: str) -> IntegrationDefinition:
        try:
            return self._definitions[provider_id]
        except KeyError:
            raise UnknownProviderError(provider_id) from None

    def find(self, provider_id: str) -> Optional[IntegrationDefinition]:
        return self._definitions.get(provider_id)

    def has(self, provider_id: str) -> bool:
        return provider_id in self._definitions

    def all(self) -> List[IntegrationDefinition]:
        return list(self._definitions.values())

    def __len__(self) -> int:
        return len(self._definitions)


def build_default_registry(
    timeout: float = 30.0,
    max_retries: int = 3,
    lookback_days: int = 30,
) -> ConnectorRegistry:
    """Registry with every bundled provider adapter."""
    from pulse.connectors.gumroad.fetcher import build_gumroad_integration
    from pulse.connectors.revenuecat.fetcher import build_revenuecat_integration
    from pulse.connectors.stripe.fetcher import build_stripe_integration

    return ConnectorRegistry(
        [
            build_stripe_integration(timeout=timeout, max_retries=max_retries, lookback_days=lookback_days),
            build_gumroad_integration(timeout=timeout, max_retries=max_retries, lookback_days=lookback_days),
            build_revenuecat_integration(timeout=timeout, max_retries=max_retries, lookback_days=lookback_days),
        ]
    )
