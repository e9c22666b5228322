"""
Round coordinator: drives the local peer through one pool round.

All pool traffic is NIP-04 direct messages addressed to the pool public key.
A joining peer asks for the pool secret from a throwaway key; once it holds
the secret it reads and writes the pool channel like every other peer:

1. peers are counted from unique ``join_pool`` requests
2. once the pool is full (or registration closes) the count must equal the
   configured size, then each peer posts its output address
3. the output template is derived locally from the registered outputs and
   each peer posts its own input signed ALL|ANYONECANPAY
4. when every input is in and verified, each peer assembles, checks the fee
   rate of, and broadcasts the same transaction
"""

from __future__ import annotations

import asyncio
import random
import threading
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from loguru import logger

from joinstr.backends.base import BackendError, BlockchainBackend
from joinstr.backends.electrum import ElectrumBackend, ElectrumError, is_already_known
from joinstr.coinjoin.builder import CoinJoinError, finalize, select_coin, verify_input
from joinstr.coinjoin.state import (
    Aborted,
    Committed,
    Completed,
    Configuring,
    Published,
    Registering,
    RoundError,
    RoundState,
    Signing,
)
from joinstr.constants import ENCRYPTED_DM_KIND
from joinstr.directory import PoolDirectory, new_pool_id
from joinstr.errors import (
    InitiateCoinjoinError,
    ListCoinsError,
    ListPoolsError,
    PeerConfigError,
    SerdeJsonError,
)
from joinstr.models import Coin, PeerConfig, PoolConfig, PoolDescriptor, RoundPhase
from joinstr.nostr.event import NostrError, NostrKeys, build_event, nip04_decrypt, nip04_encrypt
from joinstr.nostr.messages import (
    Credentials,
    JoinPool,
    MessageError,
    OutputRegistration,
    PoolMessage,
    SignedInput,
    decode_message,
    encode_message,
)
from joinstr.nostr.relay import RelayClient, RelayError, Subscription, WebSocketRelay
from joinstr.settings import Settings, get_settings
from joinstr.wallet.address import AddressError, address_to_script
from joinstr.wallet.scanner import CoinScanner
from joinstr.wallet.signer import SignerError, WpkhSigner
from joinstr.wallet.transaction import Transaction, TxIn

# Pools this process is currently running a round for
_active_pools: set[str] = set()
_active_pools_lock = threading.Lock()

# Clock skew tolerated when replaying the pool channel
SINCE_SLACK = 60

# Failures that end a round without being a bug
ROUND_FAILURES = (RoundError, CoinJoinError, RelayError, SignerError, NostrError)


class RoundCoordinator:
    """Runs one round for one peer. Not reusable."""

    def __init__(
        self,
        peer: PeerConfig,
        relay: RelayClient,
        backend: BlockchainBackend,
        settings: Settings | None = None,
        active_pools: set[str] | None = None,
    ):
        self.peer = peer
        self.relay = relay
        self.backend = backend
        self.settings = settings or get_settings()
        self.directory = PoolDirectory(relay)
        self.state: RoundState | Completed | Aborted | None = None
        self.active_pools = _active_pools if active_pools is None else active_pools

        self._signer: WpkhSigner | None = None
        self._join_keys = NostrKeys()
        self._seen_events: set[str] = set()
        self._early_outputs: list[str] = []
        self._early_inputs: list[SignedInput] = []

    async def initiate(self, config: PoolConfig) -> str:
        """Advertise a new pool and run its round. Returns the txid."""
        pool_keys = NostrKeys()
        now = int(time.time())
        state = Configuring(
            pool_id=new_pool_id(pool_keys.public_key_hex),
            deadline=now + config.max_duration,
            config=config,
        )
        self.state = state
        descriptor = PoolDescriptor.from_config(
            state.pool_id, pool_keys.public_key_hex, config, [self.peer.relay], now=now
        )
        coin = await self._prepare(descriptor)

        await self.directory.publish(descriptor, pool_keys)
        published = state.publish(descriptor)
        logger.info(
            f"Initiated pool {published.pool_id[:8]}: {config.peers} peers x "
            f"{descriptor.denomination} sats, {config.fee} sat/vB"
        )
        return await self._run(published, coin, pool_keys)

    async def join(self, descriptor: PoolDescriptor) -> str:
        """Join an advertised pool and run its round. Returns the txid."""
        if descriptor.is_expired():
            raise ListPoolsError(f"Pool {descriptor.id} has expired")
        coin = await self._prepare(descriptor)
        published = Published(pool_id=descriptor.id, deadline=descriptor.expiry, descriptor=descriptor)
        self.state = published
        logger.info(f"Joining pool {descriptor.id[:8]}")
        return await self._run(published, coin, None)

    async def _prepare(self, descriptor: PoolDescriptor) -> Coin:
        """Check our output and pick the coin we will register."""
        fee_rate = descriptor.fixed_fee_rate
        if fee_rate is None:
            raise InitiateCoinjoinError("Pools with a fee provider are not supported")

        try:
            address_to_script(self.peer.output, descriptor.network)
        except AddressError as e:
            raise PeerConfigError(f"Output address is unusable on this pool: {e}") from e

        self._signer = WpkhSigner(self.peer.mnemonics.get_secret_value(), descriptor.network)
        coins = await CoinScanner(self._signer, self.backend).scan(
            self.settings.scan_index_min, self.settings.scan_index_max
        )
        coin = select_coin(
            coins,
            descriptor.denomination,
            fee_rate,
            descriptor.peers,
            self.peer.input_outpoint,
        )
        if coin is None:
            raise ListCoinsError(
                f"No coin can cover {descriptor.denomination} sats plus the pool fee "
                f"among {len(coins)} coins"
            )
        logger.info(f"Selected coin {coin.outpoint} ({coin.value} sats)")
        return coin

    async def _run(
        self, published: Published, coin: Coin, pool_keys: NostrKeys | None
    ) -> str:
        pool_id = published.pool_id
        with _active_pools_lock:
            if pool_id in self.active_pools:
                raise InitiateCoinjoinError(
                    f"A round for pool {pool_id[:8]} is already running"
                )
            self.active_pools.add(pool_id)

        initiator = pool_keys is not None
        descriptor = published.descriptor
        try:
            self.state = published.register(coin, self.peer.output)
            if pool_keys is None:
                pool_keys = await self._request_credentials(descriptor, published.deadline)

            since = descriptor.created_at or int(time.time()) - self.settings.pool_lookback
            sub = await self.relay.subscribe(
                [
                    {
                        "kinds": [ENCRYPTED_DM_KIND],
                        "#p": [descriptor.public_key],
                        "since": max(0, since - SINCE_SLACK),
                    }
                ]
            )
            try:
                if initiator:
                    await self._send(
                        self._join_keys,
                        descriptor.public_key,
                        JoinPool(npub=self._join_keys.public_key_hex),
                    )
                committed = await self._register_peers(sub, pool_keys, initiator)
                signing = await self._register_outputs(committed, sub, pool_keys)
                completed = await self._register_inputs(signing, sub, pool_keys)
            finally:
                await self.relay.unsubscribe(sub)

        except Exception as e:
            current = self.state
            if isinstance(current, RoundState):
                self.state = current.abort(str(e))
            if initiator and pool_keys is not None:
                await self._announce_delete(descriptor, pool_keys)
            if not isinstance(e, ROUND_FAILURES):
                logger.exception(f"Round for pool {pool_id[:8]} failed: {e}")
                raise
            logger.error(f"Round for pool {pool_id[:8]} aborted: {e}")
            raise InitiateCoinjoinError(f"Round for pool {pool_id[:8]} aborted: {e}") from e
        finally:
            with _active_pools_lock:
                self.active_pools.discard(pool_id)

        if initiator and pool_keys is not None:
            await self._announce_delete(descriptor, pool_keys)
        logger.info(f"CoinJoin complete: {completed.txid}")
        return completed.txid

    async def _send(self, keys: NostrKeys, recipient: str, message: PoolMessage) -> None:
        content = nip04_encrypt(keys, recipient, encode_message(message))
        event = build_event(keys, ENCRYPTED_DM_KIND, content, tags=[["p", recipient]])
        await self.relay.publish(event)

    async def _next_message(
        self, sub: Subscription, keys: NostrKeys, deadline: float
    ) -> PoolMessage | None:
        """Next decodable message on ``sub``, or None once ``deadline`` passes."""
        while (remaining := deadline - time.time()) > 0:
            event = await sub.next(timeout=min(remaining, self.settings.poll_interval))
            if event is None:
                continue
            if event.id in self._seen_events:
                continue
            self._seen_events.add(event.id)
            try:
                return decode_message(nip04_decrypt(keys, event.pubkey, event.content))
            except (NostrError, MessageError) as e:
                logger.warning(f"Dropping pool message {event.id[:8]}: {e}")
        return None

    async def _random_delay(self) -> None:
        low, high = self.settings.min_delay, self.settings.max_delay
        if high > 0:
            await asyncio.sleep(random.uniform(low, max(low, high)))

    async def _request_credentials(self, descriptor: PoolDescriptor, deadline: float) -> NostrKeys:
        sub = await self.relay.subscribe(
            [
                {
                    "kinds": [ENCRYPTED_DM_KIND],
                    "#p": [self._join_keys.public_key_hex],
                    "since": int(time.time()) - SINCE_SLACK,
                }
            ]
        )
        try:
            await self._send(
                self._join_keys,
                descriptor.public_key,
                JoinPool(npub=self._join_keys.public_key_hex),
            )
            wait_until = min(
                deadline,
                descriptor.registration_deadline,
                time.time() + self.settings.credentials_timeout,
            )
            while True:
                message = await self._next_message(sub, self._join_keys, wait_until)
                if message is None:
                    raise RoundError(f"No credentials received for pool {descriptor.id[:8]}")
                if not isinstance(message, Credentials) or message.pool_id != descriptor.id:
                    continue
                try:
                    keys = NostrKeys.from_hex(message.key)
                except NostrError as e:
                    logger.warning(f"Ignoring unusable credentials: {e}")
                    continue
                if keys.public_key_hex != descriptor.public_key:
                    logger.warning("Ignoring credentials that do not match the pool key")
                    continue
                logger.info(f"Received credentials for pool {descriptor.id[:8]}")
                return keys
        finally:
            await self.relay.unsubscribe(sub)

    def _buffer(self, message: PoolMessage) -> None:
        if isinstance(message, OutputRegistration):
            self._early_outputs.append(message.address)
        elif isinstance(message, SignedInput):
            self._early_inputs.append(message)
        else:
            logger.debug(f"Ignoring {type(message).__name__} in phase {self.state.phase.value}")

    async def _register_peers(
        self, sub: Subscription, pool_keys: NostrKeys, initiator: bool
    ) -> Committed:
        state = self.state
        assert isinstance(state, Registering)
        descriptor = state.descriptor
        registration_deadline = min(descriptor.registration_deadline, state.deadline)

        logger.info(f"Phase 1: waiting for {descriptor.peers} peers in pool {state.pool_id[:8]}")
        while not (descriptor.starts_early and state.is_full):
            message = await self._next_message(sub, pool_keys, registration_deadline)
            if message is None:
                break
            if not isinstance(message, JoinPool):
                self._buffer(message)
                continue
            if message.npub is None or message.npub in state.peers:
                continue
            if not NostrKeys.is_valid_public_key(message.npub):
                logger.warning(f"Ignoring join request with invalid key {message.npub[:16]}")
                continue

            state = state.add_peer(message.npub)
            self.state = state
            logger.info(f"Peer joined pool {state.pool_id[:8]}: {len(state.peers)}/{descriptor.peers}")
            if initiator:
                if message.npub != self._join_keys.public_key_hex:
                    await self._send(
                        pool_keys,
                        message.npub,
                        Credentials(pool_id=state.pool_id, key=pool_keys.secret_hex),
                    )
                await self._announce_update(
                    descriptor, pool_keys, len(state.peers), RoundPhase.REGISTERING
                )

        if len(state.peers) < descriptor.peers:
            raise RoundError(
                f"Not enough peers: {len(state.peers)}/{descriptor.peers} joined before "
                "registration closed"
            )
        committed = state.commit()
        self.state = committed
        logger.info(f"Phase 2: pool {committed.pool_id[:8]} committed with {len(committed.peers)} peers")
        if initiator:
            await self._announce_update(
                descriptor, pool_keys, len(committed.peers), RoundPhase.COMMITTED
            )
        return committed

    def _accept_output(self, state: Committed, address: str) -> Committed:
        try:
            address_to_script(address, state.descriptor.network)
        except AddressError as e:
            logger.warning(f"Dropping output: {e}")
            return state
        if address in state.outputs:
            logger.warning(f"Dropping duplicate output {address}")
            return state
        return state.add_output(address)

    async def _register_outputs(
        self, state: Committed, sub: Subscription, pool_keys: NostrKeys
    ) -> Signing:
        await self._random_delay()
        await self._send(
            pool_keys, state.descriptor.public_key, OutputRegistration(state.output_address)
        )

        early, self._early_outputs = self._early_outputs, []
        for address in early:
            state = self._accept_output(state, address)

        while not state.outputs_complete:
            message = await self._next_message(sub, pool_keys, state.deadline)
            if message is None:
                raise RoundError(
                    f"Timed out with {len(state.outputs)}/{len(state.peers)} outputs registered"
                )
            if isinstance(message, OutputRegistration):
                state = self._accept_output(state, message.address)
                self.state = state
            else:
                self._buffer(message)

        signing = state.start_signing()
        self.state = signing
        logger.info(f"Phase 3: signing input {signing.coin.outpoint}")
        return signing

    async def _accept_input(self, state: Signing, signed: SignedInput) -> Signing:
        outpoint = signed.txin.outpoint
        if outpoint in state.outpoints:
            return state
        try:
            prevout = await self.backend.get_prevout(signed.txin.txid, signed.txin.vout)
            verify_input(state.template, signed, prevout)
        except (BackendError, CoinJoinError) as e:
            logger.warning(f"Dropping input {outpoint}: {e}")
            return state
        logger.debug(f"Accepted input {outpoint}")
        return state.add_input(signed)

    async def _register_inputs(
        self, state: Signing, sub: Subscription, pool_keys: NostrKeys
    ) -> Completed:
        assert self._signer is not None
        coin = state.coin
        txin = TxIn(txid=coin.txid, vout=coin.vout)
        single = Transaction(
            version=state.template.version,
            inputs=[txin],
            outputs=state.template.outputs,
            locktime=state.template.locktime,
        )
        txin.witness = self._signer.sign_input(single, 0, coin)

        await self._random_delay()
        await self._send(
            pool_keys, state.descriptor.public_key, SignedInput(txin=txin, amount=coin.value)
        )

        pending, self._early_inputs = self._early_inputs, []
        while not state.inputs_complete:
            if pending:
                signed = pending.pop(0)
            else:
                message = await self._next_message(sub, pool_keys, state.deadline)
                if message is None:
                    raise RoundError(
                        f"Timed out with {len(state.inputs)}/{len(state.outputs)} inputs signed"
                    )
                if not isinstance(message, SignedInput):
                    logger.debug(f"Ignoring {type(message).__name__} while collecting inputs")
                    continue
                signed = message
            state = await self._accept_input(state, signed)
            self.state = state

        tx = finalize(state.template, list(state.inputs), state.descriptor.fixed_fee_rate or 0)
        await self._broadcast(tx)
        completed = state.complete(tx)
        self.state = completed
        return completed

    async def _broadcast(self, tx: Transaction) -> None:
        logger.info(f"Phase 4: broadcasting {tx.txid}")
        try:
            txid = await self.backend.broadcast_transaction(tx.to_hex())
        except ElectrumError as e:
            if is_already_known(e):
                logger.info(f"Transaction {tx.txid} already broadcast by another peer")
                return
            raise RoundError(f"Broadcast failed: {e}") from e
        except BackendError as e:
            raise RoundError(f"Broadcast failed: {e}") from e
        if txid != tx.txid:
            logger.warning(f"Server reported txid {txid}, expected {tx.txid}")

    async def _announce_update(
        self, descriptor: PoolDescriptor, pool_keys: NostrKeys, peers: int, phase: RoundPhase
    ) -> None:
        try:
            await self.directory.announce_update(descriptor, pool_keys, peers, phase)
        except ListPoolsError as e:
            logger.warning(f"Could not update pool advertisement: {e}")

    async def _announce_delete(self, descriptor: PoolDescriptor, pool_keys: NostrKeys) -> None:
        try:
            await self.directory.announce_delete(descriptor, pool_keys)
        except ListPoolsError as e:
            logger.warning(f"Could not remove pool advertisement: {e}")


@asynccontextmanager
async def _connections(
    peer: PeerConfig,
    settings: Settings,
    relay: RelayClient | None,
    backend: BlockchainBackend | None,
) -> AsyncIterator[tuple[RelayClient, BlockchainBackend]]:
    """Open the relay and Electrum connections a round needs unless supplied."""
    owned_relay = relay is None
    owned_backend = backend is None
    if relay is None:
        relay = WebSocketRelay(
            peer.relay,
            connect_timeout=settings.relay_connect_timeout,
            ack_timeout=settings.relay_ack_timeout,
        )
    if backend is None:
        backend = ElectrumBackend(
            peer.electrum_address, peer.electrum_port, timeout=settings.electrum_timeout
        )
    try:
        try:
            await relay.connect()
        except RelayError as e:
            raise ListPoolsError(f"Relay unreachable: {e}") from e
        try:
            await backend.connect()
        except BackendError as e:
            raise ListCoinsError(f"Electrum server unreachable: {e}") from e
        yield relay, backend
    finally:
        if owned_relay:
            await relay.close()
        if owned_backend:
            await backend.close()


async def resolve_pool(pool: str, directory: PoolDirectory, settings: Settings) -> PoolDescriptor:
    """A pool argument is either a descriptor as JSON or a pool id to look up."""
    pool = pool.strip()
    if pool.startswith("{"):
        try:
            return PoolDescriptor.from_json(pool)
        except ValueError as e:
            raise SerdeJsonError(f"Invalid pool descriptor: {e}") from e
    return await directory.find_pool(pool, settings.pool_lookback, settings.pool_lookup_timeout)


async def initiate_coinjoin(
    config: PoolConfig,
    peer: PeerConfig,
    settings: Settings | None = None,
    relay: RelayClient | None = None,
    backend: BlockchainBackend | None = None,
) -> str:
    settings = settings or get_settings()
    async with _connections(peer, settings, relay, backend) as (relay, backend):
        return await RoundCoordinator(peer, relay, backend, settings).initiate(config)


async def join_coinjoin(
    pool: str | PoolDescriptor,
    peer: PeerConfig,
    settings: Settings | None = None,
    relay: RelayClient | None = None,
    backend: BlockchainBackend | None = None,
) -> str:
    settings = settings or get_settings()
    async with _connections(peer, settings, relay, backend) as (relay, backend):
        if isinstance(pool, PoolDescriptor):
            descriptor = pool
        else:
            descriptor = await resolve_pool(pool, PoolDirectory(relay), settings)
        return await RoundCoordinator(peer, relay, backend, settings).join(descriptor)
