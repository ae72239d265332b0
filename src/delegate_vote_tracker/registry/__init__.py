"""Registry layer - Tally delegate list and the canonical delegate merge."""

from delegate_vote_tracker.registry.cache import CachedValue, DelegateListCache
from delegate_vote_tracker.registry.merge import DelegateRegistry, FieldChange, RegistrySyncResult
from delegate_vote_tracker.registry.tally import (
    AdaptiveDelay,
    RegistryDelegate,
    RegistryFetch,
    TallyClient,
    TallyError,
    TallyRateLimitError,
    TallyResponseError,
)

__all__ = [
    "AdaptiveDelay",
    "CachedValue",
    "DelegateListCache",
    "DelegateRegistry",
    "FieldChange",
    "RegistryDelegate",
    "RegistryFetch",
    "RegistrySyncResult",
    "TallyClient",
    "TallyError",
    "TallyRateLimitError",
    "TallyResponseError",
]
