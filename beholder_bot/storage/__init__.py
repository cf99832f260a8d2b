from .membership import MembershipCache, MembershipMixin
from .quotes import QuoteRepository
from .schema import MigrationStep, MigrationTable, SchemaManager
from .store import ChannelRepository
from .utils import ConnectionProvider, coerce_text, normalize_channel
from .watch import WatchMixin

__all__ = [
    "ChannelRepository",
    "ConnectionProvider",
    "MembershipCache",
    "MembershipMixin",
    "MigrationStep",
    "MigrationTable",
    "QuoteRepository",
    "SchemaManager",
    "WatchMixin",
    "coerce_text",
    "normalize_channel",
]
