"""Payer adapters and the adapter registry."""

from .base import AccessToken, HttpPayerAdapter, PayerAdapter, PayerRequestContext
from .errors import (
    PayerAdapterError,
    PayerAuthenticationError,
    PayerInvalidRequestError,
    PayerMemberNotFoundError,
    PayerRateLimitError,
    PayerServiceUnavailableError,
)
from .medicare import MedicareAdapter
from .registry import AdapterRegistry, build_default_registry, get_registry

__all__ = [
    "AccessToken",
    "AdapterRegistry",
    "HttpPayerAdapter",
    "MedicareAdapter",
    "PayerAdapter",
    "PayerAdapterError",
    "PayerAuthenticationError",
    "PayerInvalidRequestError",
    "PayerMemberNotFoundError",
    "PayerRateLimitError",
    "PayerRequestContext",
    "PayerServiceUnavailableError",
    "build_default_registry",
    "get_registry",
]
