"""
Bitcoin address utilities for native SegWit outputs.
"""

from __future__ import annotations

import hashlib

import bech32

from joinstr.models import Network


class AddressError(Exception):
    pass


def hash160(data: bytes) -> bytes:
    """RIPEMD160(SHA256(data))"""
    h = hashlib.new("ripemd160")
    h.update(hashlib.sha256(data).digest())
    return h.digest()


def pubkey_to_p2wpkh_script(pubkey: bytes) -> bytes:
    """P2WPKH scriptPubKey (OP_0 <20-byte-hash>)"""
    if len(pubkey) != 33:
        raise AddressError(f"Invalid compressed pubkey length: {len(pubkey)}")
    return bytes([0x00, 0x14]) + hash160(pubkey)


def pubkey_to_p2wpkh_address(pubkey: bytes, network: Network) -> str:
    """BIP173 bech32 address for a compressed public key."""
    return script_to_address(pubkey_to_p2wpkh_script(pubkey), network)


def address_to_script(address: str, network: Network) -> bytes:
    """
    Decode a segwit address into its scriptPubKey.

    The address must belong to ``network``; a valid address of another
    network is rejected rather than reinterpreted.

    Raises:
        AddressError: If the address is malformed or for another network
    """
    hrp = network.hrp
    # bcrt1 also starts with "b", so compare the separator position too
    if address.lower().rfind("1") != len(hrp) or not address.lower().startswith(hrp):
        raise AddressError(f"Address {address} is not a {network.value} address")

    witver, witprog = bech32.decode(hrp, address)
    if witver is None or witprog is None:
        raise AddressError(f"Invalid bech32 address: {address}")

    program = bytes(witprog)
    if witver == 0 and len(program) in (20, 32):
        return bytes([0x00, len(program)]) + program
    if witver == 1 and len(program) == 32:
        return bytes([0x51, 0x20]) + program
    raise AddressError(f"Unsupported witness version {witver} in {address}")


def script_to_address(script: bytes, network: Network) -> str:
    """Encode a v0/v1 segwit scriptPubKey as an address."""
    if len(script) in (22, 34) and script[0] == 0x00 and script[1] == len(script) - 2:
        witver = 0
    elif len(script) == 34 and script[0] == 0x51 and script[1] == 0x20:
        witver = 1
    else:
        raise AddressError(f"Unsupported scriptPubKey: {script.hex()}")

    result = bech32.encode(network.hrp, witver, script[2:])
    if result is None:
        raise AddressError(f"Failed to encode scriptPubKey: {script.hex()}")
    return result


def is_p2wpkh_script(script: bytes) -> bool:
    return len(script) == 22 and script[0] == 0x00 and script[1] == 0x14


def script_to_scripthash(script: bytes) -> str:
    """Electrum scripthash: reversed sha256 of the scriptPubKey, hex encoded."""
    return hashlib.sha256(script).digest()[::-1].hex()
