"""
Hot signer for a BIP84 single-account wallet.
"""

from __future__ import annotations

from joinstr.models import Coin, CoinPath, Network
from joinstr.wallet.address import pubkey_to_p2wpkh_address, pubkey_to_p2wpkh_script
from joinstr.wallet.bip32 import HDKey, account_path, mnemonic_to_seed
from joinstr.wallet.transaction import Transaction, sign_p2wpkh_input


class SignerError(Exception):
    pass


class WpkhSigner:
    """
    Derives keys at m/84'/<coin>'/<account>'/<chain>/<index> and signs the
    P2WPKH inputs that spend them.
    """

    def __init__(self, mnemonic: str, network: Network, passphrase: str = "", account: int = 0):
        master = HDKey.from_seed(mnemonic_to_seed(mnemonic, passphrase))
        self.network = network
        self.account_path = account_path(network, account)
        account_key = master.derive(self.account_path)
        self._chains = {chain: account_key.derive(f"m/{chain}") for chain in (0, 1)}

    def key(self, path: CoinPath) -> HDKey:
        return self._chains[path.chain].derive(f"m/{path.index}")

    def script_pubkey(self, path: CoinPath) -> bytes:
        return pubkey_to_p2wpkh_script(self.key(path).get_public_key_bytes())

    def address(self, path: CoinPath) -> str:
        return pubkey_to_p2wpkh_address(self.key(path).get_public_key_bytes(), self.network)

    def sign_input(self, tx: Transaction, input_index: int, coin: Coin) -> list[bytes]:
        """
        Sign the input spending ``coin`` and return its witness.

        Raises:
            SignerError: If the input does not spend ``coin`` or the coin is not ours
        """
        if input_index >= len(tx.inputs):
            raise SignerError(f"Input index {input_index} out of range")
        if tx.inputs[input_index].outpoint != coin.outpoint:
            raise SignerError(f"Input {input_index} does not spend {coin.outpoint}")

        key = self.key(coin.path)
        if pubkey_to_p2wpkh_script(key.get_public_key_bytes()).hex() != coin.script_pubkey:
            raise SignerError(f"Coin {coin.outpoint} is not controlled by this wallet")

        return sign_p2wpkh_input(tx, input_index, coin.value, key.private_key)
