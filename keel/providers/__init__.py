"""
Providers - the external APIs resources are materialized through.
"""

from .base import CloudAPIError, Provider, ProviderResult
from .simulated import SimulatedCloudProvider

__all__ = [
    "CloudAPIError",
    "Provider",
    "ProviderResult",
    "SimulatedCloudProvider",
]
