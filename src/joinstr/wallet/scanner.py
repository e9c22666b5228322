"""
Coin discovery over a bounded derivation index range.
"""

from __future__ import annotations

import asyncio

from loguru import logger

from joinstr.backends.base import BackendError, BlockchainBackend
from joinstr.backends.electrum import ElectrumBackend, ElectrumProtocolError
from joinstr.constants import EXTERNAL_CHAIN, INTERNAL_CHAIN
from joinstr.errors import JsonError, ListCoinsError
from joinstr.models import Coin, CoinPath, Network
from joinstr.wallet.signer import WpkhSigner


class CoinScanner:
    """
    Lists the wallet's unspent outputs for both the receive and change chains.

    A scan is read-only and all-or-nothing: one failed lookup fails the scan.
    """

    def __init__(self, signer: WpkhSigner, backend: BlockchainBackend):
        self.signer = signer
        self.backend = backend

    async def scan(self, index_min: int, index_max: int) -> list[Coin]:
        if index_min < 0 or index_min > index_max:
            raise ListCoinsError(f"Invalid index range [{index_min}, {index_max}]")

        paths = [
            CoinPath(chain=chain, index=index)
            for index in range(index_min, index_max + 1)
            for chain in (EXTERNAL_CHAIN, INTERNAL_CHAIN)
        ]
        scripts = [self.signer.script_pubkey(path) for path in paths]

        try:
            results = await asyncio.gather(
                *(self.backend.list_unspent(script) for script in scripts)
            )
        except ElectrumProtocolError as e:
            raise JsonError(f"Malformed coin index response: {e}") from e
        except BackendError as e:
            raise ListCoinsError(f"Coin scan failed: {e}") from e

        coins: list[Coin] = []
        for path, script, utxos in zip(paths, scripts, results):
            for utxo in utxos:
                coins.append(
                    Coin(
                        txid=utxo.txid,
                        vout=utxo.vout,
                        value=utxo.value,
                        address=self.signer.address(path),
                        script_pubkey=script.hex(),
                        path=path,
                        height=utxo.height,
                    )
                )

        logger.info(
            f"Scanned indices {index_min}..{index_max}: found {len(coins)} coins "
            f"worth {sum(c.value for c in coins)} sats"
        )
        return coins


async def list_coins(
    mnemonic: str,
    electrum_address: str,
    electrum_port: int,
    network: Network,
    index_min: int,
    index_max: int,
    timeout: float = 30.0,
) -> list[Coin]:
    """Scan a wallet against an Electrum server."""
    signer = WpkhSigner(mnemonic, network)
    backend = ElectrumBackend(electrum_address, electrum_port, timeout=timeout)
    try:
        await backend.connect()
        return await CoinScanner(signer, backend).scan(index_min, index_max)
    except ElectrumProtocolError as e:
        raise JsonError(str(e)) from e
    except BackendError as e:
        raise ListCoinsError(str(e)) from e
    finally:
        await backend.close()
