"""
CoinJoin round: phase values, transaction construction and the coordinator.
"""

from joinstr.coinjoin.builder import CoinJoinError, FeeTooLowError
from joinstr.coinjoin.state import Aborted, Completed, RoundError

__all__ = [
    "Aborted",
    "CoinJoinError",
    "Completed",
    "FeeTooLowError",
    "RoundError",
]
