"""
Core data models using Pydantic for validation and serialization.
"""

from __future__ import annotations

import json
import re
import time
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    ValidationError,
    computed_field,
    field_validator,
)

from joinstr.constants import POOL_VERSION, SATS_PER_BTC, STANDARD_DUST_LIMIT
from joinstr.errors import PeerConfigError, PoolConfigError

OUTPOINT_RE = re.compile(r"^[0-9a-fA-F]{64}:\d+$")
MNEMONIC_WORD_COUNTS = (12, 15, 18, 21, 24)


class Network(str, Enum):
    MAINNET = "mainnet"
    TESTNET = "testnet"
    SIGNET = "signet"
    REGTEST = "regtest"

    @property
    def hrp(self) -> str:
        """Bech32 human readable part for segwit addresses."""
        return {
            Network.MAINNET: "bc",
            Network.TESTNET: "tb",
            Network.SIGNET: "tb",
            Network.REGTEST: "bcrt",
        }[self]

    @property
    def coin_type(self) -> int:
        """BIP44 coin type: 0 on mainnet, 1 on every test network."""
        return 0 if self == Network.MAINNET else 1


def _normalize_network(v: Any) -> Any:
    # rust-bitcoin style peers name mainnet "bitcoin"
    if isinstance(v, str):
        v = v.lower()
        if v == "bitcoin":
            return Network.MAINNET.value
    return v


class RoundPhase(str, Enum):
    CONFIGURING = "configuring"
    PUBLISHED = "published"
    REGISTERING = "registering"
    COMMITTED = "committed"
    SIGNING = "signing"
    COMPLETED = "completed"
    ABORTED = "aborted"


class PoolConfig(BaseModel):
    """Economic and topology parameters of a pool."""

    model_config = ConfigDict(frozen=True)

    denomination: Decimal = Field(..., gt=0, description="Output value in BTC")
    fee: int = Field(..., ge=0, description="Minimum fee rate in sat/vB")
    max_duration: int = Field(..., gt=0, description="Round lifetime in seconds")
    peers: int = Field(..., ge=2, le=255)
    network: Network

    def __init__(self, **data: Any) -> None:
        try:
            super().__init__(**data)
        except ValidationError as e:
            raise PoolConfigError(f"Invalid pool config: {e}") from e

    @field_validator("network", mode="before")
    @classmethod
    def validate_network(cls, v: Any) -> Any:
        return _normalize_network(v)

    @field_validator("denomination")
    @classmethod
    def validate_denomination(cls, v: Decimal) -> Decimal:
        sats = v * SATS_PER_BTC
        if sats != sats.to_integral_value():
            raise ValueError("denomination must be a whole number of satoshis")
        if sats < STANDARD_DUST_LIMIT:
            raise ValueError(f"denomination must be at least {STANDARD_DUST_LIMIT} sats")
        return v

    @property
    def denomination_sats(self) -> int:
        return int(self.denomination * SATS_PER_BTC)

    @classmethod
    def from_json(cls, data: str) -> PoolConfig:
        try:
            obj = json.loads(data, parse_float=Decimal)
        except json.JSONDecodeError as e:
            raise PoolConfigError(f"Invalid pool config JSON: {e}") from e
        if not isinstance(obj, dict):
            raise PoolConfigError("Pool config must be a JSON object")
        return cls(**obj)


class PeerConfig(BaseModel):
    """Connection parameters and wallet material of the local peer."""

    model_config = ConfigDict(frozen=True)

    electrum_address: str = Field(..., min_length=1)
    electrum_port: int = Field(..., ge=1, le=65535)
    mnemonics: SecretStr
    input: str = ""
    output: str = Field(..., min_length=1)
    relay: str = Field(..., min_length=1)

    def __init__(self, **data: Any) -> None:
        try:
            super().__init__(**data)
        except ValidationError as e:
            raise PeerConfigError(f"Invalid peer config: {e}") from e

    @field_validator("mnemonics")
    @classmethod
    def validate_mnemonics(cls, v: SecretStr) -> SecretStr:
        words = v.get_secret_value().split()
        if len(words) not in MNEMONIC_WORD_COUNTS:
            raise ValueError(f"mnemonic must have one of {MNEMONIC_WORD_COUNTS} words")
        return v

    @field_validator("input")
    @classmethod
    def validate_input(cls, v: str) -> str:
        v = v.strip()
        if v in ("", "*"):
            return ""
        if not OUTPOINT_RE.match(v):
            raise ValueError(f"input must be empty, '*' or txid:vout, got {v!r}")
        return v.lower()

    @field_validator("output")
    @classmethod
    def validate_output(cls, v: str) -> str:
        return v.strip()

    @field_validator("relay")
    @classmethod
    def validate_relay(cls, v: str) -> str:
        if not v.startswith(("ws://", "wss://")):
            raise ValueError("relay must be a ws:// or wss:// URL")
        return v

    @property
    def input_outpoint(self) -> tuple[str, int] | None:
        if not self.input:
            return None
        txid, vout = self.input.split(":")
        return txid, int(vout)

    @classmethod
    def from_json(cls, data: str) -> PeerConfig:
        try:
            obj = json.loads(data)
        except json.JSONDecodeError as e:
            raise PeerConfigError(f"Invalid peer config JSON: {e}") from e
        if not isinstance(obj, dict):
            raise PeerConfigError("Peer config must be a JSON object")
        return cls(**obj)


class CoinPath(BaseModel):
    model_config = ConfigDict(frozen=True)

    chain: int = Field(..., ge=0, le=1)
    index: int = Field(..., ge=0)


class Coin(BaseModel):
    """An unspent output controlled by the wallet."""

    model_config = ConfigDict(frozen=True)

    txid: str = Field(..., pattern=r"^[0-9a-f]{64}$")
    vout: int = Field(..., ge=0)
    value: int = Field(..., ge=0)
    address: str
    script_pubkey: str
    path: CoinPath
    height: int = 0

    @computed_field  # type: ignore[prop-decorator]
    @property
    def outpoint(self) -> str:
        return f"{self.txid}:{self.vout}"


class PoolType(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class FixedTimeline(BaseModel):
    """Registration closes at ``start``; the round must finish by start + max_duration."""

    model_config = ConfigDict(frozen=True)

    start: int
    max_duration: int


class TimeoutTimeline(BaseModel):
    """Registration closes at ``timeout`` or earlier once the pool is full."""

    model_config = ConfigDict(frozen=True)

    timeout: int
    max_duration: int


# A bare integer is the simple timeline: register and finish before that timestamp.
Timeline = int | FixedTimeline | TimeoutTimeline


class FeeProvider(BaseModel):
    model_config = ConfigDict(frozen=True)

    address: str


Fee = int | FeeProvider


class Vpn(BaseModel):
    enable: bool = False
    gateway: str | None = None


class Tor(BaseModel):
    enable: bool = False


class Transport(BaseModel):
    vpn: Vpn | None = Field(default_factory=Vpn)
    tor: Tor | None = Field(default_factory=Tor)


class PoolDescriptor(BaseModel):
    """A pool advertisement as published on the relay."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    versions: list[str] = Field(default_factory=lambda: [POOL_VERSION])
    id: str = Field(..., min_length=1)
    network: Network
    pool_type: PoolType = Field(default=PoolType.CREATE, alias="type")
    public_key: str = Field(..., pattern=r"^[0-9a-f]{64}$")
    denomination: int = Field(..., gt=0, description="Output value in sats")
    peers: int = Field(..., ge=2, le=255)
    timeout: Timeline
    relays: list[str] = Field(default_factory=list)
    fee_rate: Fee = 0
    transport: Transport = Field(default_factory=Transport)
    registered_peers: int = Field(default=0, ge=0)
    phase: RoundPhase = RoundPhase.PUBLISHED
    created_at: int = Field(default=0, exclude=True)

    @field_validator("network", mode="before")
    @classmethod
    def validate_network(cls, v: Any) -> Any:
        return _normalize_network(v)

    @field_validator("pool_type", mode="before")
    @classmethod
    def validate_pool_type(cls, v: Any) -> Any:
        if v == "new_pool":
            return PoolType.CREATE.value
        return v

    @classmethod
    def from_config(
        cls,
        pool_id: str,
        public_key: str,
        config: PoolConfig,
        relays: list[str],
        now: int | None = None,
    ) -> PoolDescriptor:
        now = int(time.time()) if now is None else now
        return cls(
            id=pool_id,
            network=config.network,
            pool_type=PoolType.CREATE,
            public_key=public_key,
            denomination=config.denomination_sats,
            peers=config.peers,
            timeout=now + config.max_duration,
            relays=relays,
            fee_rate=config.fee,
            created_at=now,
        )

    @property
    def registration_deadline(self) -> int:
        if isinstance(self.timeout, FixedTimeline):
            return self.timeout.start
        if isinstance(self.timeout, TimeoutTimeline):
            return self.timeout.timeout
        return self.timeout

    @property
    def expiry(self) -> int:
        """Absolute timestamp after which the pool is dead."""
        if isinstance(self.timeout, FixedTimeline):
            return self.timeout.start + self.timeout.max_duration
        if isinstance(self.timeout, TimeoutTimeline):
            return self.timeout.timeout + self.timeout.max_duration
        return self.timeout

    @property
    def starts_early(self) -> bool:
        """Whether the round may start as soon as the pool is full."""
        return not isinstance(self.timeout, FixedTimeline)

    def is_expired(self, now: float | None = None) -> bool:
        now = time.time() if now is None else now
        return now >= self.expiry

    @property
    def fixed_fee_rate(self) -> int | None:
        return self.fee_rate if isinstance(self.fee_rate, int) else None

    def to_json(self) -> str:
        return json.dumps(self.model_dump(mode="json", by_alias=True, exclude_none=True))

    @classmethod
    def from_json(cls, data: str, created_at: int = 0) -> PoolDescriptor:
        """
        Parse a descriptor from JSON.

        Raises:
            json.JSONDecodeError: If data is not JSON
            ValidationError: If the object is not a valid pool descriptor
        """
        obj = json.loads(data)
        if not isinstance(obj, dict):
            raise ValueError("Pool descriptor must be a JSON object")
        if created_at:
            obj["created_at"] = created_at
        return cls.model_validate(obj)
