"""
Base coin-index backend interface.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

from joinstr.wallet.transaction import TransactionError, TxOut, deserialize_transaction


class BackendError(Exception):
    pass


@dataclass
class UTXO:
    txid: str
    vout: int
    value: int
    height: int = 0


class BlockchainBackend(ABC):
    """
    Read access to the UTXO set plus transaction broadcast.
    """

    async def connect(self) -> None:
        """Open the underlying connection, if any"""

    @abstractmethod
    async def list_unspent(self, script_pubkey: bytes) -> list[UTXO]:
        """Get unspent outputs paying to a scriptPubKey"""

    @abstractmethod
    async def get_transaction(self, txid: str) -> str:
        """Get a raw transaction as hex"""

    @abstractmethod
    async def broadcast_transaction(self, tx_hex: str) -> str:
        """Broadcast transaction, returns txid"""

    async def get_prevout(self, txid: str, vout: int) -> TxOut:
        """
        Fetch the output an input spends.

        Raises:
            BackendError: If the transaction is unknown or has no such output
        """
        raw = await self.get_transaction(txid)
        try:
            tx = deserialize_transaction(bytes.fromhex(raw))
        except (TransactionError, ValueError) as e:
            raise BackendError(f"Malformed transaction {txid}: {e}") from e
        if tx.txid != txid:
            raise BackendError(f"Backend returned transaction {tx.txid} for {txid}")
        if vout >= len(tx.outputs):
            raise BackendError(f"Transaction {txid} has no output {vout}")
        return tx.outputs[vout]

    async def close(self) -> None:
        """Close backend connection"""

    async def __aenter__(self) -> BlockchainBackend:
        await self.connect()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()
