"""
joinstr - CoinJoin rounds coordinated over nostr relays

Provides pool discovery, coin scanning and the round coordinator. Blocking
entry points for foreign callers live in ``joinstr.interface``.
"""

__version__ = "0.1.0"

from joinstr.errors import ErrorKind, JoinstrError
from joinstr.models import Coin, Network, PeerConfig, PoolConfig, PoolDescriptor

__all__ = [
    "Coin",
    "ErrorKind",
    "JoinstrError",
    "Network",
    "PeerConfig",
    "PoolConfig",
    "PoolDescriptor",
]
