"""
Blocking entry points for foreign callers.

Every operation runs its own event loop and returns a ``Response``: either a
string payload or an ``ErrorKind``, never both. Arguments may be passed as
``str`` or UTF-8 ``bytes``.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from typing import TypeVar

from loguru import logger
from pydantic import BaseModel, ConfigDict, model_validator

from joinstr.coinjoin import round as coinjoin_round
from joinstr.directory import list_pools as discover_pools
from joinstr.errors import (
    AsyncRuntimeError,
    CastStringError,
    CStringError,
    ErrorKind,
    JoinstrError,
    PeerConfigError,
)
from joinstr.models import Network, PeerConfig, PoolConfig
from joinstr.settings import Settings, get_settings
from joinstr.wallet.scanner import list_coins as scan_coins

T = TypeVar("T")

Text = str | bytes


class Response(BaseModel):
    model_config = ConfigDict(frozen=True)

    payload: str | None = None
    error: ErrorKind = ErrorKind.NONE

    @model_validator(mode="after")
    def check_exclusive(self) -> Response:
        if (self.error == ErrorKind.NONE) == (self.payload is None):
            raise ValueError("A response carries either a payload or an error")
        return self

    @property
    def ok(self) -> bool:
        return self.error == ErrorKind.NONE

    @classmethod
    def success(cls, payload: str) -> Response:
        return cls(payload=payload)

    @classmethod
    def failure(cls, kind: ErrorKind) -> Response:
        return cls(error=kind)


def _text(value: Text, name: str) -> str:
    if isinstance(value, bytes):
        try:
            return value.decode("utf-8")
        except UnicodeDecodeError as e:
            raise CStringError(f"{name} is not valid UTF-8") from e
    return value


def _run(fallback: ErrorKind, operation: Callable[[], Awaitable[str]]) -> Response:
    """Run ``operation`` to completion and flatten the outcome into a Response."""
    try:
        try:
            payload = asyncio.run(operation())
        except RuntimeError as e:
            # asyncio.run refuses to nest inside a running loop
            if "running event loop" in str(e):
                raise AsyncRuntimeError(str(e)) from e
            raise
        if "\x00" in payload:
            raise CastStringError("Payload contains a NUL character")
        return Response.success(payload)
    except JoinstrError as e:
        logger.error(f"{type(e).__name__}: {e}")
        return Response.failure(e.kind)
    except Exception as e:
        logger.exception(f"Unexpected error: {e}")
        return Response.failure(fallback)


def _prepare(fallback: ErrorKind, build: Callable[[], T]) -> T | Response:
    """Decode and validate arguments before any I/O happens."""
    try:
        return build()
    except JoinstrError as e:
        logger.error(f"{type(e).__name__}: {e}")
        return Response.failure(e.kind)
    except Exception as e:
        logger.exception(f"Unexpected error: {e}")
        return Response.failure(fallback)


def list_pools(
    lookback: int, timeout: float, relay: Text, settings: Settings | None = None
) -> Response:
    """Pools advertised on ``relay`` in the last ``lookback`` seconds, as a JSON array."""
    settings = settings or get_settings()
    relay_url = _prepare(ErrorKind.LIST_POOLS, lambda: _text(relay, "relay"))
    if isinstance(relay_url, Response):
        return relay_url

    async def operation() -> str:
        pools = await discover_pools(
            lookback, timeout, relay_url, connect_timeout=settings.relay_connect_timeout
        )
        return json.dumps(
            [pool.model_dump(mode="json", by_alias=True, exclude_none=True) for pool in pools]
        )

    return _run(ErrorKind.LIST_POOLS, operation)


def list_coins(
    mnemonics: Text,
    electrum_address: Text,
    electrum_port: int,
    network: Text | Network,
    index_min: int,
    index_max: int,
    settings: Settings | None = None,
) -> Response:
    """Unspent wallet coins over the index range, as a JSON array."""
    settings = settings or get_settings()

    def build() -> tuple[str, str, Network]:
        net = network if isinstance(network, Network) else _text(network, "network").lower()
        if net == "bitcoin":
            net = Network.MAINNET
        try:
            net = Network(net)
        except ValueError as e:
            raise PeerConfigError(f"Unknown network: {net}") from e
        return _text(mnemonics, "mnemonics"), _text(electrum_address, "electrum_address"), net

    args = _prepare(ErrorKind.LIST_COINS, build)
    if isinstance(args, Response):
        return args
    seed, address, net = args

    async def operation() -> str:
        coins = await scan_coins(
            seed,
            address,
            electrum_port,
            net,
            index_min,
            index_max,
            timeout=settings.electrum_timeout,
        )
        return json.dumps([coin.model_dump(mode="json") for coin in coins])

    return _run(ErrorKind.LIST_COINS, operation)


def _pool_config(config: Text | PoolConfig) -> PoolConfig:
    if isinstance(config, PoolConfig):
        return config
    return PoolConfig.from_json(_text(config, "config"))


def _peer_config(peer: Text | PeerConfig) -> PeerConfig:
    if isinstance(peer, PeerConfig):
        return peer
    return PeerConfig.from_json(_text(peer, "peer"))


def initiate_coinjoin(
    config: Text | PoolConfig, peer: Text | PeerConfig, settings: Settings | None = None
) -> Response:
    """Create a pool, run its round and return the txid."""
    settings = settings or get_settings()
    args = _prepare(ErrorKind.INITIATE_COINJOIN, lambda: (_pool_config(config), _peer_config(peer)))
    if isinstance(args, Response):
        return args
    pool_config, peer_config = args

    async def operation() -> str:
        return await coinjoin_round.initiate_coinjoin(pool_config, peer_config, settings)

    return _run(ErrorKind.INITIATE_COINJOIN, operation)


def join_coinjoin(
    pool: Text, peer: Text | PeerConfig, settings: Settings | None = None
) -> Response:
    """Join a pool given by id or descriptor JSON, run its round and return the txid."""
    settings = settings or get_settings()
    args = _prepare(ErrorKind.INITIATE_COINJOIN, lambda: (_text(pool, "pool"), _peer_config(peer)))
    if isinstance(args, Response):
        return args
    pool_arg, peer_config = args

    async def operation() -> str:
        return await coinjoin_round.join_coinjoin(pool_arg, peer_config, settings)

    return _run(ErrorKind.INITIATE_COINJOIN, operation)


__all__ = [
    "Response",
    "initiate_coinjoin",
    "join_coinjoin",
    "list_coins",
    "list_pools",
]
