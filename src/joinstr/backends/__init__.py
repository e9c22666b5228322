"""
Blockchain backend implementations.

Available backends:
- ElectrumBackend: Electrum server over line-delimited JSON-RPC (TCP or TLS)
"""

from joinstr.backends.base import UTXO, BackendError, BlockchainBackend
from joinstr.backends.electrum import ElectrumBackend, ElectrumError

__all__ = [
    "BackendError",
    "BlockchainBackend",
    "ElectrumBackend",
    "ElectrumError",
    "UTXO",
]
