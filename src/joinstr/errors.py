"""
Error taxonomy shared by every public operation.

Each exception carries an ``ErrorKind``. The boundary adapter flattens the
exception into the kind; collaborator errors (Electrum, relay, transaction
codec) are translated into one of these classes where they cross a component
boundary.
"""

from __future__ import annotations

from enum import IntEnum


class ErrorKind(IntEnum):
    """Error codes returned to callers. Values are stable for foreign callers."""

    NONE = 0
    TOKIO = 1
    CAST_STRING = 2
    JSON = 3
    CSTRING = 4
    LIST_POOLS = 5
    LIST_COINS = 6
    INITIATE_COINJOIN = 7
    SERDE_JSON = 8
    POOL_CONFIG = 9
    PEER_CONFIG = 10


class JoinstrError(Exception):
    """Base class for all errors surfaced through the public interface."""

    kind: ErrorKind = ErrorKind.TOKIO


class AsyncRuntimeError(JoinstrError):
    """The event loop could not be started or failed underneath an operation."""

    kind = ErrorKind.TOKIO


class CastStringError(JoinstrError):
    """A payload could not be converted to a caller-safe string."""

    kind = ErrorKind.CAST_STRING


class CStringError(JoinstrError):
    """A caller-supplied argument was not valid UTF-8 text."""

    kind = ErrorKind.CSTRING


class JsonError(JoinstrError):
    """Structured data from a collaborator could not be encoded or decoded."""

    kind = ErrorKind.JSON


class ListPoolsError(JoinstrError):
    """Pool discovery failed, or the requested pool is missing or expired."""

    kind = ErrorKind.LIST_POOLS


class ListCoinsError(JoinstrError):
    """Coin scanning failed, or no eligible coin is available."""

    kind = ErrorKind.LIST_COINS


class InitiateCoinjoinError(JoinstrError):
    """The round could not be started, committed or completed."""

    kind = ErrorKind.INITIATE_COINJOIN


class SerdeJsonError(JoinstrError):
    """A caller-supplied pool descriptor could not be decoded."""

    kind = ErrorKind.SERDE_JSON


class PoolConfigError(JoinstrError):
    kind = ErrorKind.POOL_CONFIG


class PeerConfigError(JoinstrError):
    kind = ErrorKind.PEER_CONFIG
