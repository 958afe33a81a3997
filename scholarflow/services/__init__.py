from .cache import CacheStats, DiscoveryCache, discovery_key
from .providers import ProviderClient, ProviderRequest, ProviderResponse
from .rate_limit import ProviderRateLimiter, RateLimiterStatus, RatePermit
from .sources import DiscoverySourceClient
from .usage import PricingTable, UsageAccountant

__all__ = [
    "CacheStats",
    "DiscoveryCache",
    "DiscoverySourceClient",
    "PricingTable",
    "ProviderClient",
    "ProviderRateLimiter",
    "ProviderRequest",
    "ProviderResponse",
    "RateLimiterStatus",
    "RatePermit",
    "UsageAccountant",
    "discovery_key",
]
