"""
Tests for wallet key derivation, addresses, transactions and signing.
"""

import pytest
from coincurve import PrivateKey

from joinstr.models import Coin, CoinPath, Network
from joinstr.wallet.address import (
    AddressError,
    address_to_script,
    is_p2wpkh_script,
    pubkey_to_p2wpkh_script,
    script_to_address,
    script_to_scripthash,
)
from joinstr.wallet.bip32 import HDKey, account_path, mnemonic_to_seed
from joinstr.wallet.signer import SignerError, WpkhSigner
from joinstr.wallet.transaction import (
    Transaction,
    TransactionError,
    TxIn,
    TxOut,
    compute_sighash_segwit,
    create_p2wpkh_script_code,
    deserialize_transaction,
    encode_varint,
    hash256,
    read_varint,
    sign_p2wpkh_input,
    verify_p2wpkh_input,
)

TXID_A = "11" * 32
TXID_B = "22" * 32


class TestBip32:
    def test_seed_vector(self, sample_mnemonic):
        seed = mnemonic_to_seed(sample_mnemonic)
        assert seed.hex() == (
            "5eb00bbddcf069084889a8ab9155568165f5c453ccb85e70811aaed6f6da5fc1"
            "9a5ac40b389cd370d086206dec8aa6c43daea6690f20ad3d8d48b2d2ce9e38e4"
        )

    def test_seed_ignores_extra_whitespace(self, sample_mnemonic):
        spaced = "  " + sample_mnemonic.replace(" ", "   ") + "\n"
        assert mnemonic_to_seed(spaced) == mnemonic_to_seed(sample_mnemonic)

    def test_bip84_first_receive_key(self, sample_mnemonic):
        master = HDKey.from_seed(mnemonic_to_seed(sample_mnemonic))
        key = master.derive("m/84'/0'/0'/0/0")
        assert key.get_public_key_bytes().hex() == (
            "0330d54fd0dd420a6e5f8d3624f5f3482cae350f79d5f0753bf5beef9c2d91af3c"
        )
        assert key.depth == 5

    def test_relative_derivation_matches_full_path(self, sample_mnemonic):
        master = HDKey.from_seed(mnemonic_to_seed(sample_mnemonic))
        account = master.derive("m/84'/1'/0'")
        assert (
            account.derive("m/1/7").get_public_key_bytes()
            == master.derive("m/84'/1'/0'/1/7").get_public_key_bytes()
        )

    def test_invalid_path(self, sample_mnemonic):
        master = HDKey.from_seed(mnemonic_to_seed(sample_mnemonic))
        with pytest.raises(ValueError):
            master.derive("84'/0'")

    def test_account_path(self):
        assert account_path(Network.MAINNET) == "m/84'/0'/0'"
        assert account_path(Network.REGTEST, account=2) == "m/84'/1'/2'"


class TestAddress:
    def test_decode_mainnet_p2wpkh(self):
        script = address_to_script("bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t4", Network.MAINNET)
        assert script.hex() == "0014751e76e8199196d454941c45d1b3a323f1433bd6"
        assert is_p2wpkh_script(script)

    def test_decode_testnet_p2wsh(self):
        script = address_to_script(
            "tb1qrp33g0q5c5txsp9arysrx4k6zdkfs4nce4xj0gdcccefvpysxf3q0sl5k7", Network.TESTNET
        )
        assert script.hex() == (
            "00201863143c14c5166804bd19203356da136c985678cd4d27a1b8c6329604903262"
        )
        assert not is_p2wpkh_script(script)

    def test_wrong_network_rejected(self):
        with pytest.raises(AddressError):
            address_to_script("bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t4", Network.REGTEST)
        with pytest.raises(AddressError):
            address_to_script("bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t4", Network.TESTNET)

    def test_bad_checksum_rejected(self):
        with pytest.raises(AddressError):
            address_to_script("bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t5", Network.MAINNET)

    def test_script_to_address(self):
        script = bytes.fromhex("0014751e76e8199196d454941c45d1b3a323f1433bd6")
        assert script_to_address(script, Network.MAINNET) == (
            "bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t4"
        )
        assert script_to_address(script, Network.REGTEST).startswith("bcrt1q")

    def test_script_to_address_rejects_legacy(self):
        with pytest.raises(AddressError):
            script_to_address(bytes.fromhex("76a914" + "00" * 20 + "88ac"), Network.MAINNET)

    def test_uncompressed_pubkey_rejected(self):
        with pytest.raises(AddressError):
            pubkey_to_p2wpkh_script(b"\x04" + b"\x00" * 64)

    def test_scripthash_is_reversed_sha256(self):
        script = bytes.fromhex("0014751e76e8199196d454941c45d1b3a323f1433bd6")
        scripthash = script_to_scripthash(script)
        assert len(scripthash) == 64
        assert scripthash != script.hex()


class TestSigner:
    def test_bip84_addresses(self, sample_mnemonic):
        signer = WpkhSigner(sample_mnemonic, Network.MAINNET)
        assert signer.account_path == "m/84'/0'/0'"
        assert signer.address(CoinPath(chain=0, index=0)) == (
            "bc1qcr8te4kr609gcawutmrza0j4xv80jy8z306fyu"
        )
        assert signer.address(CoinPath(chain=0, index=1)) == (
            "bc1qnjg0jd8228aq7egyzacy8cys3knf9xvrerkf9g"
        )
        assert signer.address(CoinPath(chain=1, index=0)) == (
            "bc1q8c6fshw2dlwun7ekn9qwf37cu2rn755upcp6el"
        )

    def test_test_networks_use_coin_type_one(self, sample_mnemonic):
        signer = WpkhSigner(sample_mnemonic, Network.REGTEST)
        assert signer.account_path == "m/84'/1'/0'"
        assert signer.address(CoinPath(chain=0, index=0)).startswith("bcrt1q")

    def _coin(self, signer, path, value=50_000):
        script = signer.script_pubkey(path)
        return Coin(
            txid=TXID_A,
            vout=1,
            value=value,
            address=signer.address(path),
            script_pubkey=script.hex(),
            path=path,
        )

    def test_sign_input(self, sample_mnemonic):
        signer = WpkhSigner(sample_mnemonic, Network.REGTEST)
        path = CoinPath(chain=0, index=3)
        coin = self._coin(signer, path)
        tx = Transaction(
            inputs=[TxIn(txid=TXID_A, vout=1)],
            outputs=[TxOut(40_000, signer.script_pubkey(CoinPath(chain=1, index=0)))],
        )
        tx.inputs[0].witness = signer.sign_input(tx, 0, coin)
        assert verify_p2wpkh_input(tx, 0, coin.value, bytes.fromhex(coin.script_pubkey))

    def test_sign_wrong_outpoint(self, sample_mnemonic):
        signer = WpkhSigner(sample_mnemonic, Network.REGTEST)
        coin = self._coin(signer, CoinPath(chain=0, index=0))
        tx = Transaction(inputs=[TxIn(txid=TXID_B, vout=1)], outputs=[])
        with pytest.raises(SignerError):
            signer.sign_input(tx, 0, coin)

    def test_sign_foreign_coin(self, sample_mnemonic):
        signer = WpkhSigner(sample_mnemonic, Network.REGTEST)
        other = WpkhSigner(
            "legal winner thank year wave sausage worth useful legal winner thank yellow",
            Network.REGTEST,
        )
        coin = self._coin(other, CoinPath(chain=0, index=0))
        tx = Transaction(inputs=[TxIn(txid=TXID_A, vout=1)], outputs=[])
        with pytest.raises(SignerError):
            signer.sign_input(tx, 0, coin)

    def test_index_out_of_range(self, sample_mnemonic):
        signer = WpkhSigner(sample_mnemonic, Network.REGTEST)
        coin = self._coin(signer, CoinPath(chain=0, index=0))
        with pytest.raises(SignerError):
            signer.sign_input(Transaction(), 0, coin)


class TestVarint:
    def test_encode(self):
        assert encode_varint(5) == bytes([5])
        assert encode_varint(0xFD) == bytes([0xFD, 0xFD, 0x00])
        assert encode_varint(0x10000) == bytes([0xFE, 0x00, 0x00, 0x01, 0x00])

    def test_read(self):
        assert read_varint(bytes([0xFD, 0x01, 0x00]), 0) == (1, 3)

    def test_truncated(self):
        with pytest.raises(TransactionError):
            read_varint(bytes([0xFE, 0x01]), 0)


class TestTransaction:
    def test_hash256_empty(self):
        assert hash256(b"").hex() == (
            "5df6e0e2761359d30a8275058e299fcc0381534545f55cf43e41983f5d4c9456"
        )

    def _signed_tx(self, key: PrivateKey, sighash_type: int = 0x81) -> Transaction:
        script = pubkey_to_p2wpkh_script(key.public_key.format(compressed=True))
        tx = Transaction(
            inputs=[TxIn(txid=TXID_A, vout=0)],
            outputs=[TxOut(90_000, script), TxOut(5_000, script)],
        )
        tx.inputs[0].witness = sign_p2wpkh_input(tx, 0, 100_000, key, sighash_type)
        return tx

    def test_witness_serialization(self):
        key = PrivateKey()
        tx = self._signed_tx(key)
        parsed = deserialize_transaction(tx.serialize())
        assert parsed.txid == tx.txid
        assert parsed.inputs[0].witness == tx.inputs[0].witness
        assert parsed.outputs[0].value == 90_000
        # txid commits to the stripped serialization only
        assert tx.txid == hash256(tx.serialize(include_witness=False))[::-1].hex()
        assert tx.weight == len(tx.serialize(include_witness=False)) * 3 + len(tx.serialize())

    def test_trailing_bytes_rejected(self):
        tx = self._signed_tx(PrivateKey())
        with pytest.raises(TransactionError):
            deserialize_transaction(tx.serialize() + b"\x00")

    def test_truncated_rejected(self):
        tx = self._signed_tx(PrivateKey())
        with pytest.raises(TransactionError):
            deserialize_transaction(tx.serialize()[:-10])

    def test_signature_verifies(self):
        key = PrivateKey()
        tx = self._signed_tx(key)
        script = pubkey_to_p2wpkh_script(key.public_key.format(compressed=True))
        assert tx.inputs[0].witness[0][-1] == 0x81
        assert verify_p2wpkh_input(tx, 0, 100_000, script)

    def test_wrong_amount_fails(self):
        key = PrivateKey()
        tx = self._signed_tx(key)
        script = pubkey_to_p2wpkh_script(key.public_key.format(compressed=True))
        assert not verify_p2wpkh_input(tx, 0, 100_001, script)

    def test_changed_output_fails(self):
        key = PrivateKey()
        tx = self._signed_tx(key)
        script = pubkey_to_p2wpkh_script(key.public_key.format(compressed=True))
        tx.outputs[1] = TxOut(6_000, script)
        assert not verify_p2wpkh_input(tx, 0, 100_000, script)

    def test_anyonecanpay_survives_added_inputs(self):
        key = PrivateKey()
        tx = self._signed_tx(key)
        script = pubkey_to_p2wpkh_script(key.public_key.format(compressed=True))
        tx.inputs.insert(0, TxIn(txid=TXID_B, vout=4))
        assert verify_p2wpkh_input(tx, 1, 100_000, script)

    def test_sighash_all_breaks_on_added_inputs(self):
        key = PrivateKey()
        tx = self._signed_tx(key, sighash_type=0x01)
        script = pubkey_to_p2wpkh_script(key.public_key.format(compressed=True))
        assert verify_p2wpkh_input(tx, 0, 100_000, script)
        tx.inputs.append(TxIn(txid=TXID_B, vout=4))
        assert not verify_p2wpkh_input(tx, 0, 100_000, script)

    def test_other_key_fails(self):
        tx = self._signed_tx(PrivateKey())
        other = pubkey_to_p2wpkh_script(PrivateKey().public_key.format(compressed=True))
        assert not verify_p2wpkh_input(tx, 0, 100_000, other)

    def test_unsupported_sighash(self):
        key = PrivateKey()
        pubkey = key.public_key.format(compressed=True)
        tx = Transaction(inputs=[TxIn(txid=TXID_A, vout=0)], outputs=[])
        with pytest.raises(TransactionError):
            compute_sighash_segwit(tx, 0, create_p2wpkh_script_code(pubkey), 1_000, 0x03)
