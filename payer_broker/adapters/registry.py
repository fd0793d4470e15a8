"""Process-wide map from payer code to adapter."""

import logging
from typing import Dict, List, Optional

from ..config import BrokerSettings
from ..constants import PAYER_ALIASES
from ..schemas import DataType
from .base import PayerAdapter
from .medicare import MedicareAdapter

logger = logging.getLogger(__name__)


class AdapterRegistry:
    """Registered adapters keyed by upper-case payer code."""

    def __init__(self, aliases: Optional[Dict[str, str]] = None):
        self._adapters: Dict[str, PayerAdapter] = {}
        self._aliases: Dict[str, str] = dict(PAYER_ALIASES if aliases is None else aliases)

    def register(self, adapter: PayerAdapter) -> None:
        code = adapter.payer_code.upper()
        if code in self._adapters:
            logger.warning(f"Replacing registered adapter for {code}")
        self._adapters[code] = adapter
        for alias in getattr(adapter, "aliases", ()):
            self._aliases.setdefault(alias.lower(), code)
        logger.info(f"Registered payer adapter {code} ({type(adapter).__name__})")

    def unregister(self, payer_code: str) -> None:
        self._adapters.pop(payer_code.upper(), None)

    def get_adapter(self, payer_code: str) -> Optional[PayerAdapter]:
        return self._adapters.get(payer_code.upper())

    def get_available_payers(self) -> List[str]:
        return sorted(self._adapters)

    def payers_supporting(self, capability: DataType) -> List[str]:
        return [
            code for code in self.get_available_payers()
            if self._adapters[code].supports_capability(capability)
        ]

    def resolve_payer_code(self, insurance_provider: Optional[str]) -> Optional[str]:
        """Best-effort mapping of free-text insurer names to a payer code.

        Returns None when nothing matches; the caller reports that as an
        unsupported provider.
        """
        if not insurance_provider:
            return None

        provider = insurance_provider.strip().lower()
        if provider.upper() in self._adapters:
            return provider.upper()

        for alias, code in self._aliases.items():
            if alias in provider:
                return code
        return None

    def __contains__(self, payer_code: str) -> bool:
        return payer_code.upper() in self._adapters

    def __len__(self) -> int:
        return len(self._adapters)


def build_default_registry(settings: Optional[BrokerSettings] = None) -> AdapterRegistry:
    """Registry with every adapter shipped in this package."""
    settings = settings or BrokerSettings()
    registry = AdapterRegistry()
    registry.register(MedicareAdapter(
        use_sandbox=settings.medicare_use_sandbox,
        timeout_seconds=settings.adapter_timeout_seconds,
        health_timeout_seconds=settings.health_timeout_seconds,
    ))
    return registry


# Global registry instance
_registry: Optional[AdapterRegistry] = None


def get_registry(settings: Optional[BrokerSettings] = None) -> AdapterRegistry:
    """Get the global adapter registry, building it on first use."""
    global _registry
    if _registry is None:
        _registry = build_default_registry(settings)
    return _registry
