"""
Command-line interface for joinstr.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Annotated

import typer
from loguru import logger

from joinstr import interface
from joinstr.interface import Response
from joinstr.settings import get_settings

app = typer.Typer(
    name="joinstr",
    help="joinstr - CoinJoin rounds coordinated over nostr",
    add_completion=False,
)


def setup_logging(level: str) -> None:
    """Configure loguru logging."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}",
    )


def load_json_argument(value: str) -> str:
    """Inline JSON is used as is, anything else is read as a file path."""
    if value.lstrip().startswith("{"):
        return value
    path = Path(value)
    if not path.exists():
        raise ValueError(f"File not found: {path}")
    return path.read_text()


def emit(response: Response) -> None:
    """Print the payload, or report the error kind and exit non-zero."""
    if response.ok:
        typer.echo(response.payload)
        return
    typer.echo(f"error: {response.error.name} ({int(response.error)})", err=True)
    raise typer.Exit(1)


LogLevel = Annotated[str, typer.Option("--log-level", "-l", help="Log level")]


@app.command("list-pools")
def list_pools(
    relay: Annotated[str, typer.Option("--relay", "-r", envvar="JOINSTR_RELAY", help="Relay URL")],
    lookback: Annotated[
        int, typer.Option("--lookback", help="Seconds of pool history to read")
    ] = 3600,
    timeout: Annotated[
        float, typer.Option("--timeout", "-t", help="Seconds to collect advertisements")
    ] = 5.0,
    log_level: LogLevel = "INFO",
) -> None:
    """List live pools advertised on a relay."""
    setup_logging(log_level)
    emit(interface.list_pools(lookback, timeout, relay))


@app.command("list-coins")
def list_coins(
    electrum_address: Annotated[
        str,
        typer.Option(
            "--electrum", "-e", envvar="JOINSTR_ELECTRUM", help="Electrum server (ssl:// for TLS)"
        ),
    ],
    electrum_port: Annotated[int, typer.Option("--port", "-p", help="Electrum server port")],
    mnemonic: Annotated[
        str | None, typer.Option("--mnemonic", envvar="MNEMONIC", help="Wallet mnemonic phrase")
    ] = None,
    mnemonic_file: Annotated[
        Path | None, typer.Option("--mnemonic-file", "-f", help="Path to mnemonic file")
    ] = None,
    network: Annotated[str, typer.Option("--network", "-n", help="Bitcoin network")] = "mainnet",
    index_min: Annotated[int | None, typer.Option("--index-min", help="First index")] = None,
    index_max: Annotated[int | None, typer.Option("--index-max", help="Last index")] = None,
    log_level: LogLevel = "INFO",
) -> None:
    """List the wallet's unspent coins."""
    setup_logging(log_level)
    settings = get_settings()

    if mnemonic is None and mnemonic_file is not None:
        if not mnemonic_file.exists():
            logger.error(f"Mnemonic file not found: {mnemonic_file}")
            raise typer.Exit(1)
        mnemonic = mnemonic_file.read_text().strip()
    if not mnemonic:
        logger.error("Mnemonic required. Use --mnemonic, --mnemonic-file or MNEMONIC env var")
        raise typer.Exit(1)

    emit(
        interface.list_coins(
            mnemonic,
            electrum_address,
            electrum_port,
            network,
            settings.scan_index_min if index_min is None else index_min,
            settings.scan_index_max if index_max is None else index_max,
            settings=settings,
        )
    )


@app.command()
def initiate(
    config: Annotated[
        str, typer.Option("--config", "-c", help="Pool config as JSON or a path to a JSON file")
    ],
    peer: Annotated[
        str, typer.Option("--peer", "-P", help="Peer config as JSON or a path to a JSON file")
    ],
    log_level: LogLevel = "INFO",
) -> None:
    """Create a pool and run its round. Prints the txid."""
    setup_logging(log_level)
    try:
        config_json = load_json_argument(config)
        peer_json = load_json_argument(peer)
    except ValueError as e:
        logger.error(str(e))
        raise typer.Exit(1)
    emit(interface.initiate_coinjoin(config_json, peer_json))


@app.command()
def join(
    pool: Annotated[str, typer.Argument(help="Pool id or pool descriptor JSON")],
    peer: Annotated[
        str, typer.Option("--peer", "-P", help="Peer config as JSON or a path to a JSON file")
    ],
    log_level: LogLevel = "INFO",
) -> None:
    """Join an advertised pool and run its round. Prints the txid."""
    setup_logging(log_level)
    try:
        peer_json = load_json_argument(peer)
    except ValueError as e:
        logger.error(str(e))
        raise typer.Exit(1)
    emit(interface.join_coinjoin(pool, peer_json))


def main() -> None:
    """Entry point."""
    app()


if __name__ == "__main__":
    main()
