"""
Adapters for external systems used by the AI gateway.
"""

from .provider_client import ProviderClient

__all__ = ["ProviderClient"]
