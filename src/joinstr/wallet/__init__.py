"""
BIP84 wallet primitives: key derivation, addresses, transactions and signing.
"""

from joinstr.wallet.address import AddressError, address_to_script, pubkey_to_p2wpkh_address
from joinstr.wallet.bip32 import HDKey, mnemonic_to_seed
from joinstr.wallet.signer import SignerError, WpkhSigner
from joinstr.wallet.transaction import Transaction, TransactionError, TxIn, TxOut

__all__ = [
    "AddressError",
    "HDKey",
    "SignerError",
    "Transaction",
    "TransactionError",
    "TxIn",
    "TxOut",
    "WpkhSigner",
    "address_to_script",
    "mnemonic_to_seed",
    "pubkey_to_p2wpkh_address",
]
