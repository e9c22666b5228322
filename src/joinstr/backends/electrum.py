"""
Electrum protocol backend.

Line-delimited JSON-RPC over TCP, optionally wrapped in TLS when the server
address carries an ``ssl://`` prefix. Responses are matched to requests by id
so several calls may be in flight on one connection.
"""

from __future__ import annotations

import asyncio
import json
import ssl
from typing import Any

from loguru import logger

from joinstr.backends.base import UTXO, BackendError, BlockchainBackend
from joinstr.wallet.address import script_to_scripthash

DEFAULT_TIMEOUT = 30.0
MAX_LINE_SIZE = 4 * 1024 * 1024

# Broadcast errors meaning the transaction is already known to the server
ALREADY_KNOWN_MARKERS = (
    "txn-already-known",
    "txn-already-in-mempool",
    "transaction already in block chain",
    "already have transaction",
)


class ElectrumError(BackendError):
    pass


class ElectrumProtocolError(ElectrumError):
    """The server sent something that is not a valid Electrum response."""


def parse_server_address(address: str) -> tuple[str, bool]:
    """Split an optional ``ssl://`` or ``tcp://`` scheme off a server address."""
    if address.startswith("ssl://"):
        return address[len("ssl://") :], True
    if address.startswith("tcp://"):
        return address[len("tcp://") :], False
    return address, False


class ElectrumBackend(BlockchainBackend):
    def __init__(self, address: str, port: int, timeout: float = DEFAULT_TIMEOUT):
        self.host, self.use_ssl = parse_server_address(address)
        self.port = port
        self.timeout = timeout
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._pending: dict[int, asyncio.Future[Any]] = {}
        self._request_id = 0

    @property
    def connected(self) -> bool:
        return self._writer is not None and not self._writer.is_closing()

    async def connect(self) -> None:
        if self.connected:
            return
        ssl_context = ssl.create_default_context() if self.use_ssl else None
        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(
                    self.host, self.port, ssl=ssl_context, limit=MAX_LINE_SIZE
                ),
                timeout=self.timeout,
            )
        except (OSError, asyncio.TimeoutError) as e:
            raise ElectrumError(
                f"Cannot connect to Electrum server {self.host}:{self.port}: {e}"
            ) from e
        logger.debug(f"Connected to Electrum server {self.host}:{self.port}")
        self._reader_task = asyncio.create_task(self._read_loop())

    async def _read_loop(self) -> None:
        assert self._reader is not None
        error: ElectrumError
        try:
            while True:
                line = await self._reader.readline()
                if not line:
                    error = ElectrumError("Connection closed by server")
                    break
                self._dispatch(line)
        except ElectrumProtocolError as e:
            error = e
        except (OSError, asyncio.LimitOverrunError, ValueError) as e:
            error = ElectrumError(f"Connection error: {e}")
        logger.debug(f"Electrum reader stopped: {error}")
        self._fail_pending(error)
        if self._writer is not None:
            self._writer.close()

    def _dispatch(self, line: bytes) -> None:
        try:
            message = json.loads(line)
        except json.JSONDecodeError as e:
            raise ElectrumProtocolError(f"Invalid JSON from server: {e}") from e

        if not isinstance(message, dict):
            raise ElectrumProtocolError("Server message is not a JSON object")

        request_id = message.get("id")
        if request_id is None:
            # Subscription notification, nothing subscribes here
            logger.debug(f"Ignoring Electrum notification: {message.get('method')}")
            return

        future = self._pending.pop(request_id, None)
        if future is None or future.done():
            logger.warning(f"Electrum response for unknown request id {request_id}")
            return

        if message.get("error"):
            error_info = message["error"]
            if isinstance(error_info, dict):
                error_msg = error_info.get("message", str(error_info))
            else:
                error_msg = str(error_info)
            future.set_exception(ElectrumError(f"Electrum error: {error_msg}"))
        else:
            future.set_result(message.get("result"))

    def _fail_pending(self, error: ElectrumError) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)
        self._pending.clear()

    async def _call(self, method: str, params: list[Any]) -> Any:
        if not self.connected:
            await self.connect()
        assert self._writer is not None

        self._request_id += 1
        request_id = self._request_id
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future

        payload = {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params}
        try:
            self._writer.write(json.dumps(payload).encode("utf-8") + b"\n")
            await self._writer.drain()
        except OSError as e:
            self._pending.pop(request_id, None)
            raise ElectrumError(f"Failed to send {method}: {e}") from e

        try:
            return await asyncio.wait_for(future, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            self._pending.pop(request_id, None)
            logger.error(f"Electrum call timed out: {method}")
            raise ElectrumError(f"Electrum call timed out: {method}") from e

    async def list_unspent(self, script_pubkey: bytes) -> list[UTXO]:
        result = await self._call(
            "blockchain.scripthash.listunspent", [script_to_scripthash(script_pubkey)]
        )
        if not isinstance(result, list):
            raise ElectrumProtocolError(f"listunspent returned {type(result).__name__}")

        utxos = []
        for entry in result:
            try:
                utxos.append(
                    UTXO(
                        txid=str(entry["tx_hash"]).lower(),
                        vout=int(entry["tx_pos"]),
                        value=int(entry["value"]),
                        height=int(entry.get("height", 0)),
                    )
                )
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                raise ElectrumProtocolError(f"Malformed listunspent entry {entry!r}") from e
        return utxos

    async def get_transaction(self, txid: str) -> str:
        result = await self._call("blockchain.transaction.get", [txid])
        if not isinstance(result, str):
            raise ElectrumProtocolError(f"transaction.get returned {type(result).__name__}")
        return result

    async def broadcast_transaction(self, tx_hex: str) -> str:
        result = await self._call("blockchain.transaction.broadcast", [tx_hex])
        if not isinstance(result, str):
            raise ElectrumProtocolError(f"broadcast returned {type(result).__name__}")
        return result

    async def close(self) -> None:
        if self._reader_task is not None:
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
            self._reader_task = None
        self._fail_pending(ElectrumError("Connection closed"))
        if self._writer is not None:
            self._writer.close()
            try:
                await self._writer.wait_closed()
            except OSError as e:
                logger.debug(f"Error while closing Electrum connection: {e}")
            self._writer = None
            self._reader = None


def is_already_known(error: Exception) -> bool:
    """Whether a broadcast error just means the transaction was seen before."""
    message = str(error).lower()
    return any(marker in message for marker in ALREADY_KNOWN_MARKERS)
