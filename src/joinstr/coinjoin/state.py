"""
Round phases as immutable values.

Each phase only exposes the transitions it may take, so a round cannot be
signed before it is committed or committed twice. Every non-terminal phase
can abort. Transitions that would break a round invariant raise
``RoundError`` instead of returning the next phase.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from typing import ClassVar

from joinstr.coinjoin.builder import build_template
from joinstr.models import Coin, PoolConfig, PoolDescriptor, RoundPhase
from joinstr.nostr.messages import SignedInput
from joinstr.wallet.transaction import Transaction


class RoundError(Exception):
    pass


@dataclass(frozen=True)
class RoundState:
    """Common fields of every non-terminal phase."""

    pool_id: str
    deadline: float

    phase: ClassVar[RoundPhase]

    def expired(self, now: float | None = None) -> bool:
        now = time.time() if now is None else now
        return now >= self.deadline

    def abort(self, reason: str) -> Aborted:
        return Aborted(pool_id=self.pool_id, reason=reason, aborted_from=self.phase)


@dataclass(frozen=True)
class Configuring(RoundState):
    config: PoolConfig

    phase: ClassVar[RoundPhase] = RoundPhase.CONFIGURING

    def publish(self, descriptor: PoolDescriptor) -> Published:
        if descriptor.id != self.pool_id:
            raise RoundError(f"Descriptor {descriptor.id} does not match pool {self.pool_id}")
        return Published(pool_id=self.pool_id, deadline=descriptor.expiry, descriptor=descriptor)


@dataclass(frozen=True)
class Published(RoundState):
    descriptor: PoolDescriptor

    phase: ClassVar[RoundPhase] = RoundPhase.PUBLISHED

    def register(self, coin: Coin, output_address: str) -> Registering:
        if coin.value < self.descriptor.denomination:
            raise RoundError(
                f"Coin {coin.outpoint} value {coin.value} is below the denomination "
                f"{self.descriptor.denomination}"
            )
        return Registering(
            pool_id=self.pool_id,
            deadline=self.deadline,
            descriptor=self.descriptor,
            coin=coin,
            output_address=output_address,
        )


@dataclass(frozen=True)
class Registering(RoundState):
    descriptor: PoolDescriptor
    coin: Coin
    output_address: str
    peers: frozenset[str] = frozenset()

    phase: ClassVar[RoundPhase] = RoundPhase.REGISTERING

    @property
    def is_full(self) -> bool:
        return len(self.peers) >= self.descriptor.peers

    def add_peer(self, npub: str) -> Registering:
        if npub in self.peers:
            return self
        return replace(self, peers=self.peers | {npub})

    def commit(self) -> Committed:
        if len(self.peers) != self.descriptor.peers:
            raise RoundError(
                f"Pool {self.pool_id} has {len(self.peers)} peers, expected exactly "
                f"{self.descriptor.peers}"
            )
        return Committed(
            pool_id=self.pool_id,
            deadline=self.deadline,
            descriptor=self.descriptor,
            coin=self.coin,
            output_address=self.output_address,
            peers=self.peers,
        )


@dataclass(frozen=True)
class Committed(RoundState):
    descriptor: PoolDescriptor
    coin: Coin
    output_address: str
    peers: frozenset[str]
    outputs: tuple[str, ...] = ()

    phase: ClassVar[RoundPhase] = RoundPhase.COMMITTED

    @property
    def outputs_complete(self) -> bool:
        return len(self.outputs) >= len(self.peers)

    def add_output(self, address: str) -> Committed:
        if address in self.outputs or self.outputs_complete:
            return self
        return replace(self, outputs=(*self.outputs, address))

    def start_signing(self) -> Signing:
        if len(self.outputs) != len(self.peers):
            raise RoundError(
                f"Pool {self.pool_id} has {len(self.outputs)} outputs for {len(self.peers)} peers"
            )
        if self.output_address not in self.outputs:
            raise RoundError("Our output is missing from the registered outputs")
        template = build_template(
            list(self.outputs), self.descriptor.denomination, self.descriptor.network
        )
        return Signing(
            pool_id=self.pool_id,
            deadline=self.deadline,
            descriptor=self.descriptor,
            coin=self.coin,
            outputs=self.outputs,
            template=template,
        )


@dataclass(frozen=True)
class Signing(RoundState):
    descriptor: PoolDescriptor
    coin: Coin
    outputs: tuple[str, ...]
    template: Transaction
    inputs: tuple[SignedInput, ...] = field(default=())

    phase: ClassVar[RoundPhase] = RoundPhase.SIGNING

    @property
    def outpoints(self) -> set[str]:
        return {signed.txin.outpoint for signed in self.inputs}

    @property
    def inputs_complete(self) -> bool:
        return len(self.inputs) >= len(self.outputs)

    def add_input(self, signed: SignedInput) -> Signing:
        if signed.txin.outpoint in self.outpoints or self.inputs_complete:
            return self
        return replace(self, inputs=(*self.inputs, signed))

    def complete(self, tx: Transaction) -> Completed:
        if len(tx.inputs) != len(self.outputs) or len(tx.outputs) != len(self.outputs):
            raise RoundError("Final transaction does not match the round size")
        if any(out.value != self.descriptor.denomination for out in tx.outputs):
            raise RoundError("Final transaction has an output that is not the denomination")
        if self.coin.outpoint not in {inp.outpoint for inp in tx.inputs}:
            raise RoundError("Our input is missing from the final transaction")
        return Completed(pool_id=self.pool_id, txid=tx.txid, tx=tx)


@dataclass(frozen=True)
class Completed:
    pool_id: str
    txid: str
    tx: Transaction

    phase: ClassVar[RoundPhase] = RoundPhase.COMPLETED


@dataclass(frozen=True)
class Aborted:
    pool_id: str
    reason: str
    aborted_from: RoundPhase

    phase: ClassVar[RoundPhase] = RoundPhase.ABORTED
