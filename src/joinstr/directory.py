"""
Pool discovery and advertisement over a nostr relay.

The relay is the only source of truth: nothing is cached between calls.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import time

from loguru import logger
from pydantic import ValidationError

from joinstr.constants import POOL_EVENT_KIND
from joinstr.errors import ListPoolsError
from joinstr.models import PoolDescriptor, PoolType, RoundPhase
from joinstr.nostr.event import Event, NostrKeys, build_event
from joinstr.nostr.relay import RelayClient, RelayError, WebSocketRelay


def new_pool_id(public_key_hex: str) -> str:
    """sha256 of the pool public key and the current time in microseconds."""
    micros = time.time_ns() // 1000
    return hashlib.sha256(bytes.fromhex(public_key_hex) + micros.to_bytes(16, "big")).hexdigest()


def fold_pool_events(events: list[Event], now: float | None = None) -> list[PoolDescriptor]:
    """
    Reduce pool events to the live pools they describe.

    The latest create/update per pool id wins and a delete removes the
    pool. Only the pool key may update or delete a pool. Expired pools and
    malformed events are dropped.
    """
    now = time.time() if now is None else now
    pools: dict[str, PoolDescriptor] = {}
    deleted: set[str] = set()

    for event in sorted(events, key=lambda e: e.created_at):
        try:
            obj = json.loads(event.content)
        except json.JSONDecodeError:
            logger.warning(f"Skipping pool event {event.id[:8]}: content is not JSON")
            continue
        if not isinstance(obj, dict) or not isinstance(obj.get("id"), str):
            logger.warning(f"Skipping pool event {event.id[:8]}: no pool id")
            continue

        pool_id = obj["id"]
        current = pools.get(pool_id)
        if current is not None and current.public_key != event.pubkey:
            logger.warning(f"Ignoring event {event.id[:8]} for pool {pool_id[:8]} from another key")
            continue

        if obj.get("type") == PoolType.DELETE.value:
            if current is not None or obj.get("public_key") == event.pubkey:
                pools.pop(pool_id, None)
                deleted.add(pool_id)
            continue

        try:
            descriptor = PoolDescriptor.from_json(event.content, created_at=event.created_at)
        except (ValidationError, ValueError) as e:
            logger.warning(f"Skipping malformed pool event {event.id[:8]}: {e}")
            continue
        if descriptor.public_key != event.pubkey:
            logger.warning(f"Skipping pool {pool_id[:8]}: event not signed by the pool key")
            continue
        if pool_id in deleted:
            continue
        if current is not None:
            # keep the original advertisement time
            descriptor = descriptor.model_copy(update={"created_at": current.created_at})
        pools[pool_id] = descriptor

    return [pool for pool in pools.values() if not pool.is_expired(now)]


class PoolDirectory:
    def __init__(self, relay: RelayClient):
        self.relay = relay

    async def list_pools(self, lookback: int, timeout: float) -> list[PoolDescriptor]:
        """
        Collect pool advertisements for ``timeout`` seconds.

        Raises:
            ListPoolsError: If the relay fails or sends malformed frames
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        events: list[Event] = []
        try:
            sub = await self.relay.subscribe(
                [{"kinds": [POOL_EVENT_KIND], "since": int(time.time()) - lookback}]
            )
            try:
                while (remaining := deadline - loop.time()) > 0:
                    event = await sub.next(timeout=remaining)
                    if event is None:
                        break
                    events.append(event)
            finally:
                await self.relay.unsubscribe(sub)
        except RelayError as e:
            raise ListPoolsError(f"Failed to list pools: {e}") from e

        pools = fold_pool_events(events)
        logger.info(f"Found {len(pools)} live pools in {len(events)} events")
        return pools

    async def find_pool(self, pool_id: str, lookback: int, timeout: float) -> PoolDescriptor:
        for pool in await self.list_pools(lookback, timeout):
            if pool.id == pool_id:
                return pool
        raise ListPoolsError(f"Pool {pool_id} not found or expired")

    async def _post(self, descriptor: PoolDescriptor, keys: NostrKeys) -> None:
        if keys.public_key_hex != descriptor.public_key:
            raise ListPoolsError("Pool events must be signed by the pool key")
        event = build_event(keys, POOL_EVENT_KIND, descriptor.to_json())
        try:
            await self.relay.publish(event)
        except RelayError as e:
            raise ListPoolsError(f"Failed to publish pool {descriptor.id[:8]}: {e}") from e

    async def publish(self, descriptor: PoolDescriptor, keys: NostrKeys) -> None:
        await self._post(descriptor, keys)
        logger.info(f"Published pool {descriptor.id[:8]}")

    async def announce_update(
        self, descriptor: PoolDescriptor, keys: NostrKeys, registered_peers: int, phase: RoundPhase
    ) -> PoolDescriptor:
        updated = descriptor.model_copy(
            update={
                "pool_type": PoolType.UPDATE,
                "registered_peers": registered_peers,
                "phase": phase,
            }
        )
        await self._post(updated, keys)
        return updated

    async def announce_delete(self, descriptor: PoolDescriptor, keys: NostrKeys) -> None:
        content = json.dumps(
            {
                "versions": descriptor.versions,
                "id": descriptor.id,
                "network": descriptor.network.value,
                "type": PoolType.DELETE.value,
                "public_key": descriptor.public_key,
            }
        )
        if keys.public_key_hex != descriptor.public_key:
            raise ListPoolsError("Pool events must be signed by the pool key")
        try:
            await self.relay.publish(build_event(keys, POOL_EVENT_KIND, content))
        except RelayError as e:
            raise ListPoolsError(f"Failed to delete pool {descriptor.id[:8]}: {e}") from e
        logger.info(f"Removed pool {descriptor.id[:8]}")


async def list_pools(
    lookback: int, timeout: float, relay_url: str, connect_timeout: float = 10.0
) -> list[PoolDescriptor]:
    relay = WebSocketRelay(relay_url, connect_timeout=connect_timeout)
    try:
        await relay.connect()
        return await PoolDirectory(relay).list_pools(lookback, timeout)
    except RelayError as e:
        raise ListPoolsError(str(e)) from e
    finally:
        await relay.close()
