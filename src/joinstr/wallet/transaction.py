"""
Bitcoin transaction serialization and P2WPKH signing.

Only what the pool needs: segwit v2 transactions, BIP143 sighashes and
single-input signatures that commit to every output but to no other input
(SIGHASH_ALL | SIGHASH_ANYONECANPAY), so each peer can sign before the
other inputs are known.
"""

from __future__ import annotations

import hashlib
import math
import struct
from dataclasses import dataclass, field

from coincurve import PrivateKey, PublicKey

from joinstr.constants import SIGHASH_ALL_ANYONECANPAY, SIGHASH_ANYONECANPAY
from joinstr.wallet.address import hash160


class TransactionError(Exception):
    pass


def hash256(data: bytes) -> bytes:
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def encode_varint(value: int) -> bytes:
    if value < 0xFD:
        return bytes([value])
    if value <= 0xFFFF:
        return b"\xfd" + struct.pack("<H", value)
    if value <= 0xFFFFFFFF:
        return b"\xfe" + struct.pack("<I", value)
    return b"\xff" + struct.pack("<Q", value)


def read_varint(data: bytes, offset: int) -> tuple[int, int]:
    first = data[offset]
    offset += 1
    if first < 0xFD:
        return first, offset
    size = {0xFD: 2, 0xFE: 4, 0xFF: 8}[first]
    if offset + size > len(data):
        raise TransactionError("Truncated varint")
    return int.from_bytes(data[offset : offset + size], "little"), offset + size


def _read(data: bytes, offset: int, size: int) -> tuple[bytes, int]:
    if offset + size > len(data):
        raise TransactionError("Unexpected end of data")
    return data[offset : offset + size], offset + size


@dataclass
class TxIn:
    txid: str
    vout: int
    sequence: int = 0xFFFFFFFF
    script_sig: bytes = b""
    witness: list[bytes] = field(default_factory=list)

    @property
    def outpoint(self) -> str:
        return f"{self.txid}:{self.vout}"

    def serialize_outpoint(self) -> bytes:
        # txid is in display order, raw transactions use the reverse
        return bytes.fromhex(self.txid)[::-1] + struct.pack("<I", self.vout)

    def serialize(self) -> bytes:
        return (
            self.serialize_outpoint()
            + encode_varint(len(self.script_sig))
            + self.script_sig
            + struct.pack("<I", self.sequence)
        )

    @classmethod
    def parse(cls, data: bytes, offset: int = 0) -> tuple[TxIn, int]:
        txid_le, offset = _read(data, offset, 32)
        vout_raw, offset = _read(data, offset, 4)
        script_len, offset = read_varint(data, offset)
        script_sig, offset = _read(data, offset, script_len)
        seq_raw, offset = _read(data, offset, 4)
        txin = cls(
            txid=txid_le[::-1].hex(),
            vout=struct.unpack("<I", vout_raw)[0],
            sequence=struct.unpack("<I", seq_raw)[0],
            script_sig=script_sig,
        )
        return txin, offset


@dataclass
class TxOut:
    value: int
    script: bytes

    def serialize(self) -> bytes:
        return struct.pack("<Q", self.value) + encode_varint(len(self.script)) + self.script


def serialize_witness(items: list[bytes]) -> bytes:
    return encode_varint(len(items)) + b"".join(encode_varint(len(i)) + i for i in items)


def parse_witness(data: bytes, offset: int = 0) -> tuple[list[bytes], int]:
    count, offset = read_varint(data, offset)
    items = []
    for _ in range(count):
        item_len, offset = read_varint(data, offset)
        item, offset = _read(data, offset, item_len)
        items.append(item)
    return items, offset


@dataclass
class Transaction:
    version: int = 2
    inputs: list[TxIn] = field(default_factory=list)
    outputs: list[TxOut] = field(default_factory=list)
    locktime: int = 0

    @property
    def has_witness(self) -> bool:
        return any(inp.witness for inp in self.inputs)

    def serialize(self, include_witness: bool = True) -> bytes:
        with_witness = include_witness and self.has_witness
        result = struct.pack("<i", self.version)
        if with_witness:
            result += b"\x00\x01"
        result += encode_varint(len(self.inputs))
        result += b"".join(inp.serialize() for inp in self.inputs)
        result += encode_varint(len(self.outputs))
        result += b"".join(out.serialize() for out in self.outputs)
        if with_witness:
            result += b"".join(serialize_witness(inp.witness) for inp in self.inputs)
        result += struct.pack("<I", self.locktime)
        return result

    def to_hex(self) -> str:
        return self.serialize().hex()

    @property
    def txid(self) -> str:
        return hash256(self.serialize(include_witness=False))[::-1].hex()

    @property
    def weight(self) -> int:
        base = len(self.serialize(include_witness=False))
        total = len(self.serialize())
        return base * 3 + total

    @property
    def vsize(self) -> int:
        return math.ceil(self.weight / 4)

    def output_value(self) -> int:
        return sum(out.value for out in self.outputs)


def deserialize_transaction(tx_bytes: bytes) -> Transaction:
    try:
        offset = 0
        version = struct.unpack("<i", tx_bytes[0:4])[0]
        offset = 4

        has_witness = False
        if tx_bytes[offset] == 0x00 and tx_bytes[offset + 1] == 0x01:
            has_witness = True
            offset += 2

        input_count, offset = read_varint(tx_bytes, offset)
        inputs: list[TxIn] = []
        for _ in range(input_count):
            txin, offset = TxIn.parse(tx_bytes, offset)
            inputs.append(txin)

        output_count, offset = read_varint(tx_bytes, offset)
        outputs: list[TxOut] = []
        for _ in range(output_count):
            value_raw, offset = _read(tx_bytes, offset, 8)
            script_len, offset = read_varint(tx_bytes, offset)
            script, offset = _read(tx_bytes, offset, script_len)
            outputs.append(TxOut(struct.unpack("<Q", value_raw)[0], script))

        if has_witness:
            for txin in inputs:
                txin.witness, offset = parse_witness(tx_bytes, offset)

        locktime_raw, offset = _read(tx_bytes, offset, 4)
        if offset != len(tx_bytes):
            raise TransactionError("Trailing bytes after transaction")
        return Transaction(version, inputs, outputs, struct.unpack("<I", locktime_raw)[0])

    except TransactionError:
        raise
    except (IndexError, KeyError, struct.error) as e:
        raise TransactionError(f"Failed to parse transaction: {e}") from e


def create_p2wpkh_script_code(pubkey: bytes) -> bytes:
    """BIP143 scriptCode for P2WPKH: OP_DUP OP_HASH160 <pkh> OP_EQUALVERIFY OP_CHECKSIG"""
    return b"\x76\xa9\x14" + hash160(pubkey) + b"\x88\xac"


def compute_sighash_segwit(
    tx: Transaction,
    input_index: int,
    script_code: bytes,
    value: int,
    sighash_type: int,
) -> bytes:
    if input_index >= len(tx.inputs):
        raise TransactionError("Input index out of range")

    if sighash_type & 0x1F != 0x01:
        raise TransactionError(f"Unsupported sighash type: {sighash_type:#x}")

    if sighash_type & SIGHASH_ANYONECANPAY:
        hash_prevouts = b"\x00" * 32
        hash_sequence = b"\x00" * 32
    else:
        hash_prevouts = hash256(b"".join(inp.serialize_outpoint() for inp in tx.inputs))
        hash_sequence = hash256(
            b"".join(struct.pack("<I", inp.sequence) for inp in tx.inputs)
        )
    hash_outputs = hash256(b"".join(out.serialize() for out in tx.outputs))

    target = tx.inputs[input_index]
    preimage = (
        struct.pack("<i", tx.version)
        + hash_prevouts
        + hash_sequence
        + target.serialize_outpoint()
        + encode_varint(len(script_code))
        + script_code
        + struct.pack("<Q", value)
        + struct.pack("<I", target.sequence)
        + hash_outputs
        + struct.pack("<I", tx.locktime)
        + struct.pack("<I", sighash_type)
    )
    return hash256(preimage)


def sign_p2wpkh_input(
    tx: Transaction,
    input_index: int,
    value: int,
    private_key: PrivateKey,
    sighash_type: int = SIGHASH_ALL_ANYONECANPAY,
) -> list[bytes]:
    """
    Sign a P2WPKH input and return its witness stack.

    Returns:
        [DER signature + sighash byte, compressed pubkey]
    """
    pubkey = private_key.public_key.format(compressed=True)
    sighash = compute_sighash_segwit(
        tx, input_index, create_p2wpkh_script_code(pubkey), value, sighash_type
    )
    # sighash is already SHA256d, hasher=None skips hashing
    signature = private_key.sign(sighash, hasher=None)
    return [signature + bytes([sighash_type]), pubkey]


def verify_p2wpkh_input(
    tx: Transaction, input_index: int, value: int, script_pubkey: bytes
) -> bool:
    """Check the witness of a P2WPKH input against the output it spends."""
    witness = tx.inputs[input_index].witness
    if len(witness) != 2 or len(witness[1]) != 33 or len(witness[0]) < 9:
        return False

    signature, pubkey = witness
    if script_pubkey != bytes([0x00, 0x14]) + hash160(pubkey):
        return False

    try:
        sighash = compute_sighash_segwit(
            tx, input_index, create_p2wpkh_script_code(pubkey), value, signature[-1]
        )
        return PublicKey(pubkey).verify(signature[:-1], sighash, hasher=None)
    except (TransactionError, ValueError, TypeError):
        return False
