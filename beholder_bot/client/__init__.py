from .bot import BeholderBot
from .reconcile import ChannelTransport, ReconcileResult, ReconcileState, ReconciliationLoop
from .transport import IrcTransport

__all__ = [
    "BeholderBot",
    "ChannelTransport",
    "IrcTransport",
    "ReconcileResult",
    "ReconcileState",
    "ReconciliationLoop",
]
