"""
Messages exchanged between pool peers.

Every message is a JSON object with ``"version": "1"`` and a ``type``. They
travel as NIP-04 direct messages addressed to the pool public key.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any

from joinstr.constants import POOL_MESSAGE_VERSION
from joinstr.wallet.transaction import TransactionError, TxIn, parse_witness, serialize_witness

PUBLIC_KEY_RE = re.compile(r"^[0-9a-f]{64}$")


class MessageError(Exception):
    pass


@dataclass(frozen=True)
class JoinPool:
    """Request to join; ``npub`` is the hex public key answers go to."""

    npub: str | None = None


@dataclass(frozen=True)
class Credentials:
    """Pool secret key handed out by the initiator to joining peers."""

    pool_id: str
    key: str


@dataclass(frozen=True)
class OutputRegistration:
    address: str


@dataclass(frozen=True)
class SignedInput:
    txin: TxIn
    amount: int


PoolMessage = JoinPool | Credentials | OutputRegistration | SignedInput


def encode_message(message: PoolMessage) -> str:
    obj: dict[str, Any] = {"version": POOL_MESSAGE_VERSION}
    if isinstance(message, JoinPool):
        obj["type"] = "join_pool"
        if message.npub is not None:
            obj["npub"] = message.npub
    elif isinstance(message, Credentials):
        obj["type"] = "credentials"
        obj["credentials"] = {"id": message.pool_id, "key": message.key}
    elif isinstance(message, OutputRegistration):
        obj["type"] = "output"
        obj["address"] = message.address
    elif isinstance(message, SignedInput):
        obj["type"] = "input"
        obj["input"] = {
            "txin": message.txin.serialize().hex(),
            "witness": serialize_witness(message.txin.witness).hex(),
            "amount": message.amount,
        }
    else:
        raise MessageError(f"Cannot encode {type(message).__name__}")
    return json.dumps(obj)


def _decode_input(value: Any) -> SignedInput:
    if not isinstance(value, dict):
        raise MessageError("input must be an object")
    for key in ("txin", "witness", "amount"):
        if key not in value:
            raise MessageError(f"input is missing {key}")
    if not isinstance(value["txin"], str) or not isinstance(value["witness"], str):
        raise MessageError("txin and witness must be hex strings")
    amount = value["amount"]
    if not isinstance(amount, int) or isinstance(amount, bool) or amount < 0:
        raise MessageError("amount must be a non-negative integer")

    try:
        raw_txin = bytes.fromhex(value["txin"])
        txin, end = TxIn.parse(raw_txin)
        if end != len(raw_txin):
            raise MessageError("Trailing bytes after txin")
        raw_witness = bytes.fromhex(value["witness"])
        witness, end = parse_witness(raw_witness)
        if end != len(raw_witness):
            raise MessageError("Trailing bytes after witness")
    except (ValueError, IndexError, KeyError, TransactionError) as e:
        raise MessageError(f"Malformed input: {e}") from e

    txin.witness = witness
    return SignedInput(txin=txin, amount=amount)


def decode_message(data: str) -> PoolMessage:
    """
    Parse a pool message.

    Raises:
        MessageError: On malformed JSON, unknown version or unknown type
    """
    try:
        obj = json.loads(data)
    except json.JSONDecodeError as e:
        raise MessageError(f"Invalid JSON: {e}") from e
    if not isinstance(obj, dict):
        raise MessageError("Message must be a JSON object")

    version = obj.get("version")
    if version != POOL_MESSAGE_VERSION:
        raise MessageError(f"Unsupported message version: {version!r}")

    msg_type = obj.get("type")
    if msg_type == "join_pool":
        npub = obj.get("npub")
        if npub is not None and not (isinstance(npub, str) and PUBLIC_KEY_RE.match(npub)):
            raise MessageError("npub must be a 64 character lowercase hex public key")
        return JoinPool(npub=npub)
    if msg_type == "credentials":
        creds = obj.get("credentials")
        if not isinstance(creds, dict) or not isinstance(creds.get("id"), str) or not isinstance(
            creds.get("key"), str
        ):
            raise MessageError("credentials must carry string id and key")
        return Credentials(pool_id=creds["id"], key=creds["key"])
    if msg_type == "output":
        address = obj.get("address")
        if not isinstance(address, str):
            raise MessageError("output must carry an address")
        return OutputRegistration(address=address)
    if msg_type == "input":
        return _decode_input(obj.get("input"))
    raise MessageError(f"Unknown message type: {msg_type!r}")
