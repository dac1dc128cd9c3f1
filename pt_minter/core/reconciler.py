"""Applies confirmed mints to the aggregate ledger and repairs reconciliation debt.

Compensation policy: a mint that landed on-chain is never reversed. If the
aggregate update fails, the journal keeps the record in ``reconcile_failed``
and :meth:`LedgerReconciler.repair` replays it later (periodic loop or the
admin endpoint). Replays are idempotent per mint id.
"""

from __future__ import annotations

import sqlite3
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import structlog

from pt_minter.api.metrics import RECONCILIATION_DEBT, RECONCILIATION_FAILURES
from pt_minter.core.errors import ReconciliationError
from pt_minter.core.ledger import DEBT_STATUSES, STALE_PENDING_SECONDS, MintStatus, PointsLedger

if TYPE_CHECKING:
    from pt_minter.chain.contracts import PointsContractClient

log = structlog.get_logger()


@dataclass
class RepairReport:
    repaired: list[str] = field(default_factory=list)
    already_applied: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


class LedgerReconciler:
    def __init__(self, ledger: PointsLedger) -> None:
        self._ledger = ledger

    def reconcile(self, mint_id: str) -> None:
        """Apply one confirmed mint. Raises ReconciliationError on failure."""
        try:
            self._ledger.apply_mint(mint_id)
        except (sqlite3.Error, ValueError) as e:
            RECONCILIATION_FAILURES.inc()
            try:
                self._ledger.mark(mint_id, MintStatus.RECONCILE_FAILED, error=str(e))
            except sqlite3.Error:
                log.error("reconcile_status_write_failed", mint_id=mint_id, exc_info=True)
            self.refresh_debt_gauge()
            raise ReconciliationError("Points minted but ledger update failed") from e

    def repair(self, limit: int = 500) -> RepairReport:
        """Replay every journal record that is confirmed on-chain but not yet counted."""
        report = RepairReport()
        for record in self._ledger.list_by_status(*DEBT_STATUSES, limit=limit):
            try:
                applied = self._ledger.apply_mint(record.mint_id)
            except (sqlite3.Error, ValueError) as e:
                log.error("reconciliation_repair_failed", mint_id=record.mint_id, err=str(e))
                report.failed.append(record.mint_id)
                continue
            if applied:
                report.repaired.append(record.mint_id)
            else:
                report.already_applied.append(record.mint_id)
        if report.repaired or report.failed:
            log.info(
                "reconciliation_repair_complete",
                repaired=len(report.repaired),
                failed=len(report.failed),
            )
        self.refresh_debt_gauge()
        return report

    async def resolve_unknown(
        self,
        minter: PointsContractClient,
        limit: int = 100,
        stale_after: int = STALE_PENDING_SECONDS,
    ) -> dict[str, int]:
        """Look up ambiguous mints on-chain and settle their journal status.

        Mined with status 1 becomes ``minted`` (debt, picked up by :meth:`repair`),
        status 0 becomes ``reverted``. Transactions not found stay ``unknown``.
        A ``pending`` record idle for ``stale_after`` seconds was abandoned before
        signing and becomes ``failed``.
        """
        counts = {"minted": 0, "reverted": 0, "pending": 0, "abandoned": 0}
        records = self._ledger.list_by_status(MintStatus.UNKNOWN, limit=limit)
        records += self._ledger.list_by_status(
            MintStatus.PENDING,
            limit=limit,
            updated_before=int(time.time()) - stale_after,
        )
        for record in records:
            if not record.tx_hash:
                if record.status is MintStatus.PENDING and self._ledger.mark(
                    record.mint_id,
                    MintStatus.FAILED,
                    error="Abandoned before broadcast",
                    from_statuses=(MintStatus.PENDING,),
                ):
                    log.warning("pending_mint_abandoned", mint_id=record.mint_id, created_at=record.created_at)
                    counts["abandoned"] += 1
                else:
                    counts["pending"] += 1
                continue
            try:
                status = await minter.get_receipt_status(record.tx_hash)
            except Exception as e:
                log.warning("unknown_mint_lookup_failed", mint_id=record.mint_id, tx_hash=record.tx_hash, err=str(e))
                counts["pending"] += 1
                continue
            if status is None:
                counts["pending"] += 1
            elif status == 1:
                if self._ledger.mark(record.mint_id, MintStatus.MINTED, from_statuses=(record.status,)):
                    log.warning("unknown_mint_confirmed", mint_id=record.mint_id, tx_hash=record.tx_hash)
                    counts["minted"] += 1
            elif self._ledger.mark(
                record.mint_id,
                MintStatus.REVERTED,
                error="Transaction failed",
                from_statuses=(record.status,),
            ):
                log.info("unknown_mint_reverted", mint_id=record.mint_id, tx_hash=record.tx_hash)
                counts["reverted"] += 1
        return counts

    def refresh_debt_gauge(self) -> int:
        try:
            outstanding = self._ledger.count_by_status(*DEBT_STATUSES)
        except sqlite3.Error:
            log.warning("reconciliation_debt_count_failed", exc_info=True)
            return -1
        RECONCILIATION_DEBT.set(outstanding)
        return outstanding
