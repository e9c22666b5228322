"""
Shared fixtures: an in-memory relay hub and a fake Electrum server.
"""

from __future__ import annotations

import json
import os
from typing import Any

import pytest

from joinstr.backends.base import UTXO, BackendError, BlockchainBackend
from joinstr.backends.electrum import ElectrumError
from joinstr.models import CoinPath, Network, PeerConfig
from joinstr.nostr.event import Event, matches_filter
from joinstr.nostr.relay import RelayClient, RelayError
from joinstr.settings import Settings
from joinstr.wallet.signer import WpkhSigner
from joinstr.wallet.transaction import Transaction, TxIn, TxOut, deserialize_transaction

MNEMONICS = [
    "abandon abandon abandon abandon abandon abandon abandon abandon abandon abandon abandon about",
    "legal winner thank year wave sausage worth useful legal winner thank yellow",
    "letter advice cage absurd amount doctor acoustic avoid letter advice cage above",
]

RELAY_URL = "wss://relay.test"


class FakeRelayHub:
    """Stores every published event and fans it out to matching subscriptions."""

    def __init__(self) -> None:
        self.events: list[Event] = []
        self.relays: list[FakeRelay] = []
        self.reject = False
        self.down = False

    def relay(self) -> FakeRelay:
        return FakeRelay(self)

    def route(self, relay: FakeRelay, frame: list[Any]) -> None:
        if frame[0] == "EVENT":
            event = Event.from_dict(frame[1])
            if self.reject:
                relay.handle_message(json.dumps(["OK", event.id, False, "blocked: test"]))
                return
            self.events.append(event)
            relay.handle_message(json.dumps(["OK", event.id, True, ""]))
            for other in self.relays:
                for sub_id, filters in list(other.remote_subs.items()):
                    if any(matches_filter(event, f) for f in filters):
                        other.handle_message(json.dumps(["EVENT", sub_id, event.to_dict()]))
        elif frame[0] == "REQ":
            sub_id, filters = frame[1], frame[2:]
            relay.remote_subs[sub_id] = filters
            for event in self.events:
                if any(matches_filter(event, f) for f in filters):
                    relay.handle_message(json.dumps(["EVENT", sub_id, event.to_dict()]))
            relay.handle_message(json.dumps(["EOSE", sub_id]))
        elif frame[0] == "CLOSE":
            relay.remote_subs.pop(frame[1], None)

    def events_of_kind(self, kind: int) -> list[Event]:
        return [e for e in self.events if e.kind == kind]


class FakeRelay(RelayClient):
    def __init__(self, hub: FakeRelayHub):
        super().__init__(RELAY_URL, ack_timeout=1.0)
        self.hub = hub
        self.remote_subs: dict[str, list[dict[str, Any]]] = {}
        self.sent: list[list[Any]] = []

    async def connect(self) -> None:
        if self.hub.down:
            raise RelayError(f"Cannot connect to relay {self.url}")
        if self not in self.hub.relays:
            self.hub.relays.append(self)

    async def _send(self, frame: list[Any]) -> None:
        self._check()
        self.sent.append(frame)
        self.hub.route(self, frame)

    async def close(self) -> None:
        await super().close()
        if self in self.hub.relays:
            self.hub.relays.remove(self)


class FakeChain:
    """Transactions and unspent outputs shared by every fake backend."""

    def __init__(self) -> None:
        self.transactions: dict[str, str] = {}
        self.unspent: dict[str, list[UTXO]] = {}
        self.broadcasts: list[Transaction] = []

    def fund(self, script: bytes, value: int) -> UTXO:
        """Confirm a transaction paying ``value`` to ``script`` and return the new coin."""
        funding = Transaction(
            inputs=[TxIn(txid=os.urandom(32).hex(), vout=0)],
            outputs=[TxOut(value, script)],
        )
        self.transactions[funding.txid] = funding.to_hex()
        utxo = UTXO(txid=funding.txid, vout=0, value=value, height=100)
        self.unspent.setdefault(script.hex(), []).append(utxo)
        return utxo

    def backend(self) -> FakeBackend:
        return FakeBackend(self)


class FakeBackend(BlockchainBackend):
    def __init__(self, chain: FakeChain):
        self.chain = chain
        self.fail_scan = False

    async def list_unspent(self, script_pubkey: bytes) -> list[UTXO]:
        if self.fail_scan:
            raise ElectrumError("Connection closed by server")
        return list(self.chain.unspent.get(script_pubkey.hex(), []))

    async def get_transaction(self, txid: str) -> str:
        try:
            return self.chain.transactions[txid]
        except KeyError:
            raise BackendError(f"No such transaction {txid}") from None

    async def broadcast_transaction(self, tx_hex: str) -> str:
        tx = deserialize_transaction(bytes.fromhex(tx_hex))
        if tx.txid in self.chain.transactions:
            raise ElectrumError("Electrum error: txn-already-known")
        self.chain.transactions[tx.txid] = tx_hex
        self.chain.broadcasts.append(tx)
        return tx.txid


@pytest.fixture
def sample_mnemonic() -> str:
    """Test mnemonic (not for production use!)."""
    return MNEMONICS[0]


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        min_delay=0,
        max_delay=0,
        poll_interval=0.05,
        credentials_timeout=5.0,
        relay_ack_timeout=1.0,
        pool_lookup_timeout=0.2,
        scan_index_min=0,
        scan_index_max=2,
    )


@pytest.fixture
def hub() -> FakeRelayHub:
    return FakeRelayHub()


@pytest.fixture
def chain() -> FakeChain:
    return FakeChain()


def _make_peer(index: int, network: Network = Network.REGTEST, **overrides: Any) -> PeerConfig:
    """Peer config whose output is the wallet's own receive address at index 1."""
    mnemonic = MNEMONICS[index]
    signer = WpkhSigner(mnemonic, network)
    fields: dict[str, Any] = {
        "electrum_address": "127.0.0.1",
        "electrum_port": 50001,
        "mnemonics": mnemonic,
        "output": signer.address(CoinPath(chain=0, index=1)),
        "relay": RELAY_URL,
    }
    fields.update(overrides)
    return PeerConfig(**fields)


def _fund_peer(
    chain: FakeChain, index: int, value: int, network: Network = Network.REGTEST
) -> UTXO:
    """Give peer ``index`` a coin at its receive address 0."""
    signer = WpkhSigner(MNEMONICS[index], network)
    return chain.fund(signer.script_pubkey(CoinPath(chain=0, index=0)), value)


@pytest.fixture
def make_peer():
    return _make_peer


@pytest.fixture
def fund_peer():
    return _fund_peer
