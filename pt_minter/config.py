"""Service configuration loaded from environment variables."""

from __future__ import annotations

import os
import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from dotenv import load_dotenv

load_dotenv()

_ETH_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
_PRIVATE_KEY_RE = re.compile(r"^(0x)?[0-9a-fA-F]{64}$")

KNOWN_ENVIRONMENTS = ("production", "staging", "development", "test", "local")

_N = TypeVar("_N", int, float)

# attribute, env name, lower bound, upper bound (None = unbounded)
_NUMERIC_BOUNDS: tuple[tuple[str, str, float, float | None], ...] = (
    ("api_port", "API_PORT", 1, 65535),
    ("points_decimals", "POINTS_DECIMALS", 0, 36),
    ("min_mint_amount", "MIN_MINT_AMOUNT", 0, None),
    ("rpc_timeout", "RPC_TIMEOUT", 1, None),
    ("mint_confirmation_timeout", "MINT_CONFIRMATION_TIMEOUT", 1.0, 3600.0),
    ("rate_limit_capacity", "RATE_LIMIT_CAPACITY", 1, None),
    ("rate_limit_rate", "RATE_LIMIT_RATE", 1, None),
    ("reconcile_interval", "RECONCILE_INTERVAL", 0.0, None),
)


def _typed_env(key: str, default: str, cast: Callable[[str], _N], kind: str) -> _N:
    raw = os.getenv(key, default)
    try:
        return cast(raw)
    except (ValueError, TypeError, OverflowError):
        raise ValueError(f"Invalid {kind} for {key}: {raw!r}") from None


def _int_env(key: str, default: str) -> int:
    return _typed_env(key, default, int, "integer")


def _float_env(key: str, default: str) -> float:
    return _typed_env(key, default, float, "float")


@dataclass(frozen=True)
class Config:
    environment: str = os.getenv("ENVIRONMENT", "development")

    # EVM chain (comma-separated URLs for failover)
    ethereum_rpc_url: str = os.getenv("ETHEREUM_RPC_URL", "http://localhost:8545")
    chain_id: int = _int_env("CHAIN_ID", "1")

    @property
    def ethereum_rpc_urls(self) -> list[str]:
        """Parse comma-separated RPC URLs for failover support."""
        return [u.strip() for u in self.ethereum_rpc_url.split(",") if u.strip()]

    # Minter signing key (owner of the points contract's mint role)
    private_key: str = os.getenv("PRIVATE_KEY", "")

    # Points contract
    points_contract_address: str = os.getenv(
        "POINTS_CONTRACT_ADDRESS", "0xAD32172b6B8860d3015FAeAbF289823453201568"
    )
    points_decimals: int = _int_env("POINTS_DECIMALS", "21")
    min_mint_amount: int = _int_env("MIN_MINT_AMOUNT", "10")

    # Storage
    data_dir: str = os.getenv("DATA_DIR", "data")

    # API
    api_host: str = os.getenv("API_HOST", "0.0.0.0")
    api_port: int = _int_env("API_PORT", "8000")
    cors_origins: str = os.getenv("CORS_ORIGINS", "")
    admin_token: str = os.getenv("ADMIN_TOKEN", "")

    # Timeouts (seconds)
    rpc_timeout: int = _int_env("RPC_TIMEOUT", "30")
    mint_confirmation_timeout: float = _float_env("MINT_CONFIRMATION_TIMEOUT", "120.0")

    # Rate limits (configurable without redeploy)
    rate_limit_capacity: int = _int_env("RATE_LIMIT_CAPACITY", "30")
    rate_limit_rate: int = _int_env("RATE_LIMIT_RATE", "5")

    # Reconciliation debt repair loop, 0 disables it
    reconcile_interval: float = _float_env("RECONCILE_INTERVAL", "0")

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def _check_bounds(self) -> None:
        for attr, env_name, low, high in _NUMERIC_BOUNDS:
            value = getattr(self, attr)
            if value < low or (high is not None and value > high):
                allowed = f"{low}-{high}" if high is not None else f">= {low}"
                raise ValueError(f"{env_name} must be {allowed}, got {value}")

    def validate(self, *, strict: bool | None = None) -> list[str]:
        """Check the loaded settings before the service starts.

        Malformed or out-of-range values raise ``ValueError`` straight away.
        Softer problems come back as warning strings; with ``strict`` (the
        default in production) any warning is fatal too.
        """
        if strict is None:
            strict = self.is_production

        self._check_bounds()
        if not self.ethereum_rpc_urls:
            raise ValueError("ETHEREUM_RPC_URL must contain at least one URL")
        if not _ETH_ADDRESS_RE.match(self.points_contract_address):
            raise ValueError(
                f"POINTS_CONTRACT_ADDRESS is not a valid Ethereum address: {self.points_contract_address!r}"
            )

        problems: list[str] = []
        if not self.private_key:
            if self.is_production:
                raise ValueError("PRIVATE_KEY must be set in production: minting requires it")
            problems.append("PRIVATE_KEY not set: minting disabled")
        elif not _PRIVATE_KEY_RE.match(self.private_key):
            raise ValueError("PRIVATE_KEY must be a 32-byte hex string (with optional 0x prefix)")
        if self.environment not in KNOWN_ENVIRONMENTS:
            problems.append(
                f"ENVIRONMENT={self.environment!r} is not a recognized environment ({', '.join(KNOWN_ENVIRONMENTS)})"
            )
        if not self.admin_token:
            problems.append("ADMIN_TOKEN not set: reconciliation endpoints disabled")
        if not self.cors_origins and self.is_production:
            problems.append("CORS_ORIGINS not set: wildcard origins in production")
        if self.rate_limit_capacity < self.rate_limit_rate:
            problems.append(
                f"RATE_LIMIT_CAPACITY ({self.rate_limit_capacity}) < RATE_LIMIT_RATE ({self.rate_limit_rate}) "
                "so the bucket never fills above the rate"
            )

        if strict and problems:
            listing = "\n".join(f"  - {p}" for p in problems)
            raise ValueError(f"Config rejected in strict mode:\n{listing}")
        return problems
