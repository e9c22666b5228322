"""
Bitcoin and pool protocol constants.

Virtual sizes are for P2WPKH spends and segwit outputs and are used to
split the pool fee between peers and to check the final fee rate.
"""

from __future__ import annotations

# Standard P2PKH dust limit in Bitcoin Core, the floor for a denomination
STANDARD_DUST_LIMIT = 546  # satoshis

SATS_PER_BTC = 100_000_000

# P2WPKH input: 41 bytes base + 107/4 witness, rounded up
INPUT_VSIZE = 68
# P2WPKH output: 8 value + 1 length + 22 script
OUTPUT_VSIZE = 31
# P2WSH or P2TR output: 8 value + 1 length + 34 script
MAX_OUTPUT_VSIZE = 43
# version + locktime + counts + segwit marker/flag
TX_OVERHEAD_VSIZE = 11

SIGHASH_ALL = 0x01
SIGHASH_ANYONECANPAY = 0x80
SIGHASH_ALL_ANYONECANPAY = SIGHASH_ALL | SIGHASH_ANYONECANPAY

# Nostr event kinds
POOL_EVENT_KIND = 2022
ENCRYPTED_DM_KIND = 4

POOL_VERSION = "0"
POOL_MESSAGE_VERSION = "1"

# BIP84 purpose
BIP84_PURPOSE = 84
EXTERNAL_CHAIN = 0
INTERNAL_CHAIN = 1
