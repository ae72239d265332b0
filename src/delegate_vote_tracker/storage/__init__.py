"""Storage layer - Database schemas and repositories."""

from delegate_vote_tracker.storage.database import (
    DatabaseManager,
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
)
from delegate_vote_tracker.storage.models import (
    Base,
    DelegateModel,
    DelegationEventModel,
    SyncCursorModel,
    VoteWeightModel,
)
from delegate_vote_tracker.storage.repos import (
    DelegateDTO,
    DelegateRepository,
    EventPartitions,
    EventStore,
    StoreOutcome,
    VoteWeightDTO,
    VoteWeightRepository,
)

__all__ = [
    "Base",
    "DatabaseManager",
    "DelegateDTO",
    "DelegateModel",
    "DelegateRepository",
    "DelegationEventModel",
    "EventPartitions",
    "EventStore",
    "StoreOutcome",
    "SyncCursorModel",
    "VoteWeightDTO",
    "VoteWeightModel",
    "VoteWeightRepository",
    "create_async_db_engine",
    "create_async_session_factory",
    "init_async_db",
]
