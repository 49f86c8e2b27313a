from .dispatcher import VALID_COMMANDS, CommandDispatcher, CommandQueueConfig
from .pending_store import (
    InMemoryPendingCommandStore,
    IPendingCommandStore,
    PendingCommand,
    RedisPendingCommandStore,
    create_pending_store,
)

__all__ = [
    "CommandDispatcher",
    "CommandQueueConfig",
    "IPendingCommandStore",
    "InMemoryPendingCommandStore",
    "PendingCommand",
    "RedisPendingCommandStore",
    "VALID_COMMANDS",
    "create_pending_store",
]
