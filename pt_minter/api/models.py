"""Pydantic request/response models for the minter REST API.

Field names follow the wire format clients already use (camelCase).
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class MintRequest(BaseModel):
    """POST /v1/pt-mint: Mint points for a signed ``message``.

    Both fields are accepted loosely here and validated by the orchestrator,
    so that every malformed body gets the same ``{error}`` response shape.
    The ``message`` dict keeps the client's key order, which the signature
    check depends on.
    """

    message: Any = None
    signature: Any = None


class MintErrorResponse(BaseModel):
    error: str
    minted: bool | None = None  # True when points moved but bookkeeping failed
    txHash: str | None = None
    mintId: str | None = None


class NonceResponse(BaseModel):
    """GET /v1/nonce/{address}: The challenge the client must sign."""

    address: str
    nonce: str


class MintRecordModel(BaseModel):
    mintId: str
    publisherName: str
    ownerAddress: str
    amount: str
    status: str
    txHash: str | None = None
    error: str | None = None
    createdAt: int
    updatedAt: int


class DebtResponse(BaseModel):
    """GET /v1/mints/debt: Confirmed, ambiguous or stale pending mints missing from the ledger."""

    count: int
    records: list[MintRecordModel] = Field(default_factory=list)


class ReconcileResponse(BaseModel):
    """POST /v1/mints/reconcile: Replay reconciliation debt."""

    repaired: list[str] = Field(default_factory=list)
    alreadyApplied: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)
    resolved: dict[str, int] = Field(default_factory=dict)
    outstanding: int = 0


class HealthResponse(BaseModel):
    """GET /health: Minter health check."""

    status: str
    version: str = "0.1.0"
    chain_connected: bool = False
    minter_configured: bool = False
    reconciliation_debt: int = 0


class ReadinessResponse(BaseModel):
    """GET /health/ready: Deep readiness probe."""

    ready: bool
    checks: dict[str, bool] = Field(default_factory=dict)
