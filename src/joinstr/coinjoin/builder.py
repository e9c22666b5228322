"""
CoinJoin transaction construction.

The transaction has one denomination output per peer and one input per
peer, no change. Outputs are ordered by scriptPubKey and inputs by outpoint
so every peer derives the same transaction from the same registrations.

Fee policy: the pool ``fee`` is the minimum fee rate in sat/vB of the final
transaction. Each peer pays an equal share of the estimated fee, so a coin
is eligible when ``value - denomination - share >= 0``. Outputs may be any
supported segwit script, so the share assumes the largest of them. Whatever
a coin holds above the denomination goes to miners.
"""

from __future__ import annotations

import math

from loguru import logger

from joinstr.constants import (
    INPUT_VSIZE,
    MAX_OUTPUT_VSIZE,
    OUTPUT_VSIZE,
    SIGHASH_ALL_ANYONECANPAY,
    TX_OVERHEAD_VSIZE,
)
from joinstr.models import Coin, Network
from joinstr.nostr.messages import SignedInput
from joinstr.wallet.address import address_to_script, is_p2wpkh_script
from joinstr.wallet.transaction import (
    Transaction,
    TxIn,
    TxOut,
    encode_varint,
    verify_p2wpkh_input,
)


class CoinJoinError(Exception):
    pass


class FeeTooLowError(CoinJoinError):
    pass


def estimate_vsize(n_inputs: int, n_outputs: int, output_vsize: int = OUTPUT_VSIZE) -> int:
    """Upper bound of the vsize of a transaction spending P2WPKH inputs."""
    # the overhead constant assumes one byte counts
    extra = len(encode_varint(n_inputs)) + len(encode_varint(n_outputs)) - 2
    return TX_OVERHEAD_VSIZE + extra + n_inputs * INPUT_VSIZE + n_outputs * output_vsize


def fee_share(fee_rate: int, peers: int) -> int:
    """Fee each peer contributes for a round of ``peers`` inputs and outputs."""
    return math.ceil(fee_rate * estimate_vsize(peers, peers, MAX_OUTPUT_VSIZE) / peers)


def select_coin(
    coins: list[Coin],
    denomination: int,
    fee_rate: int,
    peers: int,
    outpoint: tuple[str, int] | None = None,
) -> Coin | None:
    """
    Pick the eligible coin that wastes the least to fees.

    Coins below the denomination or unable to pay their fee share are
    skipped. ``outpoint`` restricts the choice to one coin.
    """
    share = fee_share(fee_rate, peers)
    best: Coin | None = None
    for coin in coins:
        if outpoint is not None and (coin.txid, coin.vout) != outpoint:
            continue
        if coin.value < denomination:
            logger.debug(f"Skipping {coin.outpoint}: {coin.value} below denomination")
            continue
        surplus = coin.value - denomination - share
        if surplus < 0:
            logger.info(
                f"Rejecting {coin.outpoint}: {coin.value} sats cannot cover "
                f"denomination {denomination} plus fee share {share}"
            )
            continue
        if best is None or coin.value < best.value:
            best = coin
    return best


def build_template(outputs: list[str], denomination: int, network: Network) -> Transaction:
    """Unsigned transaction with no inputs and one denomination output per address."""
    scripts = [address_to_script(address, network) for address in outputs]
    if len(set(scripts)) != len(scripts):
        raise CoinJoinError("Duplicate output script")
    return Transaction(
        version=2,
        inputs=[],
        outputs=[TxOut(denomination, script) for script in sorted(scripts)],
        locktime=0,
    )


def verify_input(template: Transaction, signed: SignedInput, prevout: TxOut) -> None:
    """
    Check a peer's signed input against the output it spends.

    Raises:
        CoinJoinError: If the input cannot be part of the round
    """
    txin = signed.txin
    if txin.script_sig:
        raise CoinJoinError(f"Input {txin.outpoint} has a non-empty scriptSig")
    if not is_p2wpkh_script(prevout.script):
        raise CoinJoinError(f"Input {txin.outpoint} does not spend a P2WPKH output")
    if prevout.value != signed.amount:
        raise CoinJoinError(
            f"Input {txin.outpoint} claims {signed.amount} sats but spends {prevout.value}"
        )
    if not txin.witness or txin.witness[0][-1:] != bytes([SIGHASH_ALL_ANYONECANPAY]):
        raise CoinJoinError(f"Input {txin.outpoint} is not signed ALL|ANYONECANPAY")
    if signed.amount < template.output_value() // max(len(template.outputs), 1):
        raise CoinJoinError(f"Input {txin.outpoint} is below the denomination")

    # ANYONECANPAY commits to this input and every output only
    single = Transaction(
        version=template.version,
        inputs=[txin],
        outputs=template.outputs,
        locktime=template.locktime,
    )
    if not verify_p2wpkh_input(single, 0, prevout.value, prevout.script):
        raise CoinJoinError(f"Invalid signature for input {txin.outpoint}")


def finalize(template: Transaction, inputs: list[SignedInput], fee_rate: int) -> Transaction:
    """
    Assemble the signed transaction and enforce the pool fee rate.

    Raises:
        CoinJoinError: On duplicate inputs or a size mismatch
        FeeTooLowError: If the fee rate is below ``fee_rate``
    """
    outpoints = [signed.txin.outpoint for signed in inputs]
    if len(set(outpoints)) != len(outpoints):
        raise CoinJoinError("Duplicate input")
    if len(inputs) != len(template.outputs):
        raise CoinJoinError(f"{len(inputs)} inputs for {len(template.outputs)} outputs")

    ordered = sorted(inputs, key=lambda s: (s.txin.txid, s.txin.vout))
    tx = Transaction(
        version=template.version,
        inputs=[
            TxIn(
                txid=s.txin.txid,
                vout=s.txin.vout,
                sequence=s.txin.sequence,
                witness=list(s.txin.witness),
            )
            for s in ordered
        ],
        outputs=list(template.outputs),
        locktime=template.locktime,
    )

    fee = sum(s.amount for s in inputs) - tx.output_value()
    required = fee_rate * tx.vsize
    if fee < required:
        raise FeeTooLowError(f"Fee {fee} sats is below {required} ({fee_rate} sat/vB)")
    logger.debug(f"Final transaction {tx.txid}: {tx.vsize} vB, fee {fee} sats")
    return tx
