"""Mint request orchestration.

Implements the authorization-and-mint lifecycle for one request:
1. RECEIVED -> VALIDATED: strict parsing of ``{message, signature}``
2. VALIDATED -> ELIGIBLE: device exists, is initialized, and is bound to the claimant
3. ELIGIBLE -> SIGNED: nonce swapped for a fresh one, then nonce and signer checked
4. SIGNED -> MINTED: journaled, signed, hash journaled, broadcast, and confirmed on-chain
5. MINTED -> RECONCILED: aggregate ledger updated exactly once
6. RECONCILED -> COMPLETED

Any failure moves the request to FAILED and is terminal. Nothing is retried.
Step 3 rotates the nonce before deciding, so every attempt that reaches it
consumes the nonce whatever the verdict.
"""

from __future__ import annotations

import asyncio
import sqlite3
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum, auto
from typing import TYPE_CHECKING, Any

import structlog

from pt_minter.api.metrics import MINT_REQUESTS, NONCE_ROTATIONS, POINTS_MINTED
from pt_minter.core.amounts import MIN_MINT_AMOUNT
from pt_minter.core.eligibility import EligibilityGate
from pt_minter.core.errors import (
    AmountConversionError,
    MintError,
    MintExecutionError,
    MintSubmissionError,
    ReconciliationError,
    StorageError,
)
from pt_minter.core.ledger import MintStatus, PointsLedger
from pt_minter.core.nonces import NonceStore, generate_nonce
from pt_minter.core.reconciler import LedgerReconciler
from pt_minter.core.registry import DeviceRegistry
from pt_minter.core.signature import MintMessage, parse_mint_request, verify_signed_message

if TYPE_CHECKING:
    from pt_minter.chain.contracts import MintReceipt, PointsContractClient

log = structlog.get_logger()


class MintState(Enum):
    RECEIVED = auto()
    VALIDATED = auto()
    ELIGIBLE = auto()
    SIGNED = auto()
    MINTED = auto()
    RECONCILED = auto()
    COMPLETED = auto()
    FAILED = auto()


@dataclass
class MintOutcome:
    """Tracks one request through the state machine."""

    state: MintState = MintState.RECEIVED
    failed_from: MintState | None = None
    error: MintError | None = None
    address: str | None = None
    publisher_name: str | None = None
    amount: str | None = None
    mint_id: str | None = None
    tx_hash: str | None = None
    history: list[MintState] = field(default_factory=lambda: [MintState.RECEIVED])
    created_at: float = field(default_factory=time.monotonic)

    def advance(self, state: MintState) -> None:
        self.state = state
        self.history.append(state)

    def fail(self, error: MintError) -> None:
        self.failed_from = self.state
        self.error = error
        self.advance(MintState.FAILED)

    @property
    def ok(self) -> bool:
        return self.state == MintState.COMPLETED

    @property
    def minted(self) -> bool:
        """True once points exist on-chain, including when bookkeeping then failed."""
        return MintState.MINTED in self.history

    @property
    def result(self) -> str:
        return "completed" if self.ok else self.error.reason if self.error else "unknown"


class MintOrchestrator:
    """Sequences eligibility, authentication, mint, and reconciliation."""

    def __init__(
        self,
        registry: DeviceRegistry,
        nonce_store: NonceStore,
        ledger: PointsLedger,
        minter: PointsContractClient,
        min_amount: Decimal | int = MIN_MINT_AMOUNT,
        nonce_factory: Callable[[], str] = generate_nonce,
    ) -> None:
        self._gate = EligibilityGate(registry)
        self._nonces = nonce_store
        self._ledger = ledger
        self._minter = minter
        self._reconciler = LedgerReconciler(ledger)
        self._min_amount = min_amount
        self._nonce_factory = nonce_factory

    async def process(self, message: Any, signature: Any) -> MintOutcome:
        outcome = MintOutcome()
        try:
            msg, sig = parse_mint_request(message, signature, self._min_amount)
            outcome.address = msg.address
            outcome.publisher_name = msg.publisher_name
            outcome.amount = msg.amount
            outcome.advance(MintState.VALIDATED)

            self._gate.check(msg.address, msg.publisher_name)
            outcome.advance(MintState.ELIGIBLE)

            self._authenticate(msg, sig)
            outcome.advance(MintState.SIGNED)

            receipt = await self._mint(msg, outcome)
            outcome.tx_hash = receipt.tx_hash
            outcome.advance(MintState.MINTED)
            POINTS_MINTED.inc(float(msg.amount))

            mint_id: str = outcome.mint_id  # type: ignore[assignment]
            if not self._journal(mint_id, MintStatus.MINTED, tx_hash=receipt.tx_hash):
                raise ReconciliationError("Points minted but ledger update failed")
            self._reconciler.reconcile(mint_id)
            outcome.advance(MintState.RECONCILED)
            outcome.advance(MintState.COMPLETED)
        except MintError as e:
            outcome.fail(e)
        except Exception:
            log.error("mint_pipeline_error", state=outcome.state.name, exc_info=True)
            if outcome.minted:
                outcome.fail(ReconciliationError("Points minted but ledger update failed"))
            else:
                outcome.fail(MintError("Internal error"))

        self._report(outcome)
        return outcome

    def _authenticate(self, msg: MintMessage, signature: str) -> None:
        try:
            previous = self._nonces.swap(msg.address, self._nonce_factory())
        except sqlite3.Error as e:
            log.error("nonce_store_error", address=msg.address, err=str(e))
            raise StorageError("Nonce store unavailable") from e
        if previous is not None:
            NONCE_ROTATIONS.inc()
        verify_signed_message(msg, signature, previous)

    async def _mint(self, msg: MintMessage, outcome: MintOutcome) -> MintReceipt:
        units = self._minter.to_units(msg.amount)
        try:
            mint_id = self._ledger.open_mint(msg.publisher_name, msg.address, msg.amount, units)
        except sqlite3.Error as e:
            log.error("mint_journal_error", address=msg.address, err=str(e))
            raise StorageError("Mint journal unavailable") from e
        outcome.mint_id = mint_id

        def record_signed(tx_hash: str) -> None:
            # raising here keeps the transaction from being broadcast
            self._ledger.mark(mint_id, MintStatus.UNKNOWN, tx_hash=tx_hash, error="Awaiting confirmation")
            outcome.tx_hash = tx_hash

        try:
            receipt = await self._minter.mint(msg.address, msg.amount, on_signed=record_signed)
        except MintSubmissionError as e:
            status = MintStatus.UNKNOWN if e.ambiguous else MintStatus.FAILED
            self._journal(mint_id, status, tx_hash=e.tx_hash, error=e.message)
            outcome.tx_hash = e.tx_hash or outcome.tx_hash
            raise
        except MintExecutionError as e:
            self._journal(mint_id, MintStatus.REVERTED, tx_hash=e.tx_hash, error=e.message)
            outcome.tx_hash = e.tx_hash
            raise
        except AmountConversionError as e:
            self._journal(mint_id, MintStatus.FAILED, error=e.message)
            raise
        except asyncio.CancelledError:
            # signed means possibly broadcast; the record keeps its hash for resolve_unknown
            status = MintStatus.UNKNOWN if outcome.tx_hash else MintStatus.FAILED
            log.warning("mint_cancelled", mint_id=mint_id, tx_hash=outcome.tx_hash, status=status.value)
            self._journal(mint_id, status, error="Cancelled before the outcome was known")
            raise
        except Exception as e:
            # Unclassified failure from the chain layer: assume it may have broadcast
            log.error("mint_unexpected_error", mint_id=mint_id, exc_info=True)
            self._journal(mint_id, MintStatus.UNKNOWN, error=str(e))
            raise MintSubmissionError("Mint outcome unknown", ambiguous=True, tx_hash=outcome.tx_hash) from e
        return receipt

    def _journal(self, mint_id: str, status: MintStatus, **kwargs: Any) -> bool:
        """Record a mint status transition; a journal failure never masks the mint outcome."""
        try:
            self._ledger.mark(mint_id, status, **kwargs)
            return True
        except sqlite3.Error:
            log.critical("mint_journal_update_failed", mint_id=mint_id, status=status.value, exc_info=True, **kwargs)
            return False

    def _report(self, outcome: MintOutcome) -> None:
        MINT_REQUESTS.labels(result=outcome.result).inc()
        fields = {
            "address": outcome.address,
            "publisher_name": outcome.publisher_name,
            "amount": outcome.amount,
            "mint_id": outcome.mint_id,
            "tx_hash": outcome.tx_hash,
            "elapsed_s": round(time.monotonic() - outcome.created_at, 3),
        }
        if outcome.ok:
            log.info("mint_completed", **fields)
        elif isinstance(outcome.error, ReconciliationError):
            log.critical("reconciliation_debt", error=outcome.error.message, **fields)
        elif isinstance(outcome.error, (MintSubmissionError, MintExecutionError)):
            log.error("mint_failed", reason=outcome.result, error=outcome.error.message, **fields)
        else:
            log.info(
                "mint_rejected",
                reason=outcome.result,
                error=outcome.error.message if outcome.error else None,
                failed_from=outcome.failed_from.name if outcome.failed_from else None,
                **fields,
            )
