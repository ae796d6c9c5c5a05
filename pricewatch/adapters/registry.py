"""Adapter registry: competitor adapter id -> adapter factory."""

import logging
from typing import Callable, Optional

from pricewatch.adapters.base import CompetitorAdapter
from pricewatch.adapters.cruzverde import CruzVerdeAdapter
from pricewatch.adapters.vtex import BellaPielAdapter, VtexAdapter
from pricewatch.ai.disambiguator import AIDisambiguator
from pricewatch.db.store import CatalogStore

logger = logging.getLogger(__name__)

AdapterFactory = Callable[[CatalogStore, Optional[AIDisambiguator]], CompetitorAdapter]


class AdapterRegistry:
    """Registry of competitor adapters, keyed case-insensitively."""

    _default_factories: dict[str, AdapterFactory] = {
        "vtex": VtexAdapter,
        "bellapiel": BellaPielAdapter,
        "cruzverde": CruzVerdeAdapter,
    }

    def __init__(
        self,
        store: CatalogStore,
        disambiguator: Optional[AIDisambiguator] = None,
        factories: Optional[dict[str, AdapterFactory]] = None,
    ):
        self.store = store
        self.disambiguator = disambiguator
        source = self._default_factories if factories is None else factories
        self._factories: dict[str, AdapterFactory] = {k.lower(): v for k, v in source.items()}
        self._instances: dict[str, CompetitorAdapter] = {}

    def resolve(self, adapter_id: Optional[str]) -> Optional[CompetitorAdapter]:
        """
        Get or create the adapter for an id.

        Args:
            adapter_id: Competitor's adapter identifier

        Returns:
            Adapter instance, or None if the id is not registered
        """
        if not adapter_id:
            return None

        key = adapter_id.strip().lower()
        factory = self._factories.get(key)
        if factory is None:
            return None

        # Lazy initialization
        if key not in self._instances:
            self._instances[key] = factory(self.store, self.disambiguator)
            logger.info(f"Initialized adapter: {key}")

        return self._instances[key]

    def register(self, adapter_id: str, factory: AdapterFactory) -> None:
        """
        Register an adapter factory.

        Args:
            adapter_id: Adapter identifier
            factory: Callable building the adapter from (store, disambiguator)
        """
        key = adapter_id.strip().lower()
        self._factories[key] = factory
        self._instances.pop(key, None)
        logger.info(f"Registered adapter: {key}")

    def list_adapters(self) -> list[str]:
        """List registered adapter ids."""
        return sorted(self._factories.keys())
