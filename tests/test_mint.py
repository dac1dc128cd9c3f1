"""Tests for the mint orchestrator state machine."""

from __future__ import annotations

import asyncio
import sqlite3
from decimal import Decimal
from unittest.mock import ANY, AsyncMock, MagicMock, patch

import pytest

from pt_minter.core.errors import (
    DeviceNotBound,
    DeviceNotFound,
    DeviceNotInitialized,
    InvalidNonce,
    InvalidRequest,
    InvalidSignature,
    MintError,
    MintExecutionError,
    MintSubmissionError,
    NonceNotFound,
    ReconciliationError,
    StorageError,
)
from pt_minter.core.ledger import MintStatus, PointsLedger
from pt_minter.core.mint import MintOrchestrator, MintState
from pt_minter.core.nonces import NonceStore
from pt_minter.core.registry import DeviceRegistry
from pt_minter.core.reconciler import LedgerReconciler
from tests.helpers import (
    CLAIMANT,
    DEVICE,
    OTHER,
    OTHER_KEY,
    TX_HASH,
    confirm_mint,
    make_message,
    make_minter,
    sign,
)


def _orchestrator(registry, nonce_store, ledger, minter) -> MintOrchestrator:
    return MintOrchestrator(registry, nonce_store, ledger, minter, nonce_factory=lambda: "rotated")


def _signed(nonce: str = "n1", **kwargs) -> tuple[dict, str]:
    message = make_message(nonce, **kwargs)
    return message, sign(message)


class TestHappyPath:
    @pytest.mark.asyncio
    async def test_completes(
        self, registry: DeviceRegistry, nonce_store: NonceStore, ledger: PointsLedger, minter: MagicMock
    ) -> None:
        outcome = await _orchestrator(registry, nonce_store, ledger, minter).process(*_signed())

        assert outcome.ok
        assert outcome.state == MintState.COMPLETED
        assert outcome.history == [
            MintState.RECEIVED,
            MintState.VALIDATED,
            MintState.ELIGIBLE,
            MintState.SIGNED,
            MintState.MINTED,
            MintState.RECONCILED,
            MintState.COMPLETED,
        ]
        assert outcome.tx_hash == TX_HASH
        minter.mint.assert_awaited_once_with(CLAIMANT, "15", on_signed=ANY)
        assert nonce_store.get(CLAIMANT) == "rotated"
        assert ledger.get_totals(DEVICE, CLAIMANT).total_points == Decimal("15")
        assert ledger.get_record(outcome.mint_id).status == MintStatus.RECONCILED

    @pytest.mark.asyncio
    async def test_default_nonce_factory(
        self, registry: DeviceRegistry, nonce_store: NonceStore, ledger: PointsLedger, minter: MagicMock
    ) -> None:
        outcome = await MintOrchestrator(registry, nonce_store, ledger, minter).process(*_signed())
        assert outcome.ok
        fresh = nonce_store.get(CLAIMANT)
        assert fresh != "n1"
        assert fresh.isalnum()

    @pytest.mark.asyncio
    async def test_second_mint_with_rotated_nonce(
        self, registry: DeviceRegistry, nonce_store: NonceStore, ledger: PointsLedger, minter: MagicMock
    ) -> None:
        orch = _orchestrator(registry, nonce_store, ledger, minter)
        assert (await orch.process(*_signed("n1"))).ok
        assert (await orch.process(*_signed("rotated", amount="10.5"))).ok
        totals = ledger.get_totals(DEVICE, CLAIMANT)
        assert totals.total_points == Decimal("25.5")
        assert totals.mint_count == 2


class TestRejectedBeforeNonce:
    @pytest.mark.asyncio
    async def test_missing_params(
        self, registry: DeviceRegistry, nonce_store: NonceStore, ledger: PointsLedger, minter: MagicMock
    ) -> None:
        outcome = await _orchestrator(registry, nonce_store, ledger, minter).process(None, None)
        assert isinstance(outcome.error, InvalidRequest)
        assert outcome.failed_from == MintState.RECEIVED
        assert nonce_store.get(CLAIMANT) == "n1"

    @pytest.mark.asyncio
    async def test_invalid_amount(
        self, registry: DeviceRegistry, nonce_store: NonceStore, ledger: PointsLedger, minter: MagicMock
    ) -> None:
        outcome = await _orchestrator(registry, nonce_store, ledger, minter).process(*_signed(amount="9"))
        assert outcome.error.message == "Invalid amount"
        assert nonce_store.get(CLAIMANT) == "n1"
        minter.mint.assert_not_awaited()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("setup", "error_type"),
        [
            ("missing", DeviceNotFound),
            ("uninitialized", DeviceNotInitialized),
            ("unbound", DeviceNotBound),
        ],
    )
    async def test_ineligible_device_keeps_nonce(
        self,
        registry: DeviceRegistry,
        nonce_store: NonceStore,
        ledger: PointsLedger,
        minter: MagicMock,
        setup: str,
        error_type: type,
    ) -> None:
        if setup == "missing":
            kwargs = {"publisher_name": "ghost"}
        elif setup == "uninitialized":
            registry.upsert_device(DEVICE, initialized=False)
            kwargs = {}
        else:
            nonce_store.issue(OTHER, "n1")
            kwargs = {"address": OTHER}

        outcome = await _orchestrator(registry, nonce_store, ledger, minter).process(*_signed(**kwargs))

        assert isinstance(outcome.error, error_type)
        assert outcome.failed_from == MintState.VALIDATED
        assert nonce_store.get(CLAIMANT) == "n1"
        assert nonce_store.get(OTHER) in (None, "n1")
        minter.mint.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_registry_unavailable(
        self, registry: DeviceRegistry, nonce_store: NonceStore, ledger: PointsLedger, minter: MagicMock
    ) -> None:
        with patch.object(registry, "get_device", side_effect=sqlite3.OperationalError("gone")):
            outcome = await _orchestrator(registry, nonce_store, ledger, minter).process(*_signed())
        assert isinstance(outcome.error, StorageError)
        assert nonce_store.get(CLAIMANT) == "n1"


class TestAuthentication:
    @pytest.mark.asyncio
    async def test_wrong_nonce_rotates_without_minting(
        self, registry: DeviceRegistry, nonce_store: NonceStore, ledger: PointsLedger, minter: MagicMock
    ) -> None:
        outcome = await _orchestrator(registry, nonce_store, ledger, minter).process(*_signed("stale"))
        assert isinstance(outcome.error, InvalidNonce)
        assert outcome.failed_from == MintState.ELIGIBLE
        assert nonce_store.get(CLAIMANT) == "rotated"
        minter.mint.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_bad_signature_rotates_without_minting(
        self, registry: DeviceRegistry, nonce_store: NonceStore, ledger: PointsLedger, minter: MagicMock
    ) -> None:
        message = make_message("n1")
        outcome = await _orchestrator(registry, nonce_store, ledger, minter).process(
            message, sign(message, key=OTHER_KEY)
        )
        assert isinstance(outcome.error, InvalidSignature)
        assert nonce_store.get(CLAIMANT) == "rotated"
        minter.mint.assert_not_awaited()
        assert ledger.get_totals(DEVICE, CLAIMANT) is None

    @pytest.mark.asyncio
    async def test_no_nonce_issued(
        self, registry: DeviceRegistry, ledger: PointsLedger, minter: MagicMock
    ) -> None:
        empty = NonceStore()
        outcome = await _orchestrator(registry, empty, ledger, minter).process(*_signed())
        assert isinstance(outcome.error, NonceNotFound)
        assert empty.get(CLAIMANT) is None
        minter.mint.assert_not_awaited()
        empty.close()

    @pytest.mark.asyncio
    async def test_replay_rejected(
        self, registry: DeviceRegistry, nonce_store: NonceStore, ledger: PointsLedger, minter: MagicMock
    ) -> None:
        orch = _orchestrator(registry, nonce_store, ledger, minter)
        request = _signed()
        assert (await orch.process(*request)).ok
        replay = await orch.process(*request)
        assert isinstance(replay.error, InvalidNonce)
        assert minter.mint.await_count == 1
        assert ledger.get_totals(DEVICE, CLAIMANT).total_points == Decimal("15")

    @pytest.mark.asyncio
    async def test_concurrent_same_nonce_mints_once(
        self, registry: DeviceRegistry, nonce_store: NonceStore, ledger: PointsLedger
    ) -> None:
        async def slow_mint(to, amount, on_signed=None):
            await asyncio.sleep(0.01)
            return confirm_mint(to, amount, on_signed)

        minter = make_minter(side_effect=slow_mint)
        orch = MintOrchestrator(registry, nonce_store, ledger, minter)
        request = _signed()

        results = await asyncio.gather(orch.process(*request), orch.process(*request))

        assert sum(1 for r in results if r.ok) == 1
        assert sum(1 for r in results if isinstance(r.error, InvalidNonce)) == 1
        assert minter.mint.await_count == 1
        assert ledger.get_totals(DEVICE, CLAIMANT).total_points == Decimal("15")

    @pytest.mark.asyncio
    async def test_nonce_store_unavailable(
        self, registry: DeviceRegistry, nonce_store: NonceStore, ledger: PointsLedger, minter: MagicMock
    ) -> None:
        with patch.object(nonce_store, "swap", side_effect=sqlite3.OperationalError("locked")):
            outcome = await _orchestrator(registry, nonce_store, ledger, minter).process(*_signed())
        assert isinstance(outcome.error, StorageError)
        assert outcome.error.message == "Nonce store unavailable"
        minter.mint.assert_not_awaited()


class TestMintFailures:
    @pytest.mark.asyncio
    async def test_rejected_before_broadcast(
        self, registry: DeviceRegistry, nonce_store: NonceStore, ledger: PointsLedger
    ) -> None:
        minter = make_minter(side_effect=MintSubmissionError("Minting not configured"))
        outcome = await _orchestrator(registry, nonce_store, ledger, minter).process(*_signed())

        assert isinstance(outcome.error, MintSubmissionError)
        assert not outcome.minted
        assert nonce_store.get(CLAIMANT) == "rotated"
        assert ledger.get_totals(DEVICE, CLAIMANT) is None
        assert ledger.get_record(outcome.mint_id).status == MintStatus.FAILED

    @pytest.mark.asyncio
    async def test_ambiguous_submission(
        self, registry: DeviceRegistry, nonce_store: NonceStore, ledger: PointsLedger
    ) -> None:
        minter = make_minter(
            side_effect=MintSubmissionError("Mint confirmation timed out", ambiguous=True, tx_hash=TX_HASH)
        )
        outcome = await _orchestrator(registry, nonce_store, ledger, minter).process(*_signed())

        assert outcome.error.ambiguous is True
        assert outcome.tx_hash == TX_HASH
        record = ledger.get_record(outcome.mint_id)
        assert record.status == MintStatus.UNKNOWN
        assert record.tx_hash == TX_HASH
        assert ledger.get_totals(DEVICE, CLAIMANT) is None

    @pytest.mark.asyncio
    async def test_reverted(self, registry: DeviceRegistry, nonce_store: NonceStore, ledger: PointsLedger) -> None:
        minter = make_minter(side_effect=MintExecutionError(tx_hash=TX_HASH))
        outcome = await _orchestrator(registry, nonce_store, ledger, minter).process(*_signed())

        assert isinstance(outcome.error, MintExecutionError)
        assert outcome.error.message == "Transaction failed"
        assert ledger.get_record(outcome.mint_id).status == MintStatus.REVERTED
        assert ledger.get_totals(DEVICE, CLAIMANT) is None

    @pytest.mark.asyncio
    async def test_unclassified_error_is_ambiguous(
        self, registry: DeviceRegistry, nonce_store: NonceStore, ledger: PointsLedger
    ) -> None:
        minter = make_minter(side_effect=RuntimeError("boom"))
        outcome = await _orchestrator(registry, nonce_store, ledger, minter).process(*_signed())

        assert isinstance(outcome.error, MintSubmissionError)
        assert outcome.error.ambiguous is True
        assert ledger.get_record(outcome.mint_id).status == MintStatus.UNKNOWN

    @pytest.mark.asyncio
    async def test_journal_unavailable_blocks_mint(
        self, registry: DeviceRegistry, nonce_store: NonceStore, ledger: PointsLedger, minter: MagicMock
    ) -> None:
        with patch.object(ledger, "open_mint", side_effect=sqlite3.OperationalError("disk full")):
            outcome = await _orchestrator(registry, nonce_store, ledger, minter).process(*_signed())
        assert outcome.error.message == "Mint journal unavailable"
        minter.mint.assert_not_awaited()


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancelled_after_signing_keeps_hash(
        self, registry: DeviceRegistry, nonce_store: NonceStore, ledger: PointsLedger
    ) -> None:
        signed = asyncio.Event()

        async def hang_after_signing(to, amount, on_signed=None):
            on_signed(TX_HASH)
            signed.set()
            await asyncio.Event().wait()

        minter = make_minter(side_effect=hang_after_signing)
        task = asyncio.create_task(_orchestrator(registry, nonce_store, ledger, minter).process(*_signed()))
        await signed.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        records = ledger.list_unsettled()
        assert [(r.status, r.tx_hash) for r in records] == [(MintStatus.UNKNOWN, TX_HASH)]

        minter.get_receipt_status = AsyncMock(return_value=1)
        reconciler = LedgerReconciler(ledger)
        assert (await reconciler.resolve_unknown(minter))["minted"] == 1
        assert reconciler.repair().repaired == [records[0].mint_id]
        assert ledger.get_totals(DEVICE, CLAIMANT).total_points == Decimal("15")

    @pytest.mark.asyncio
    async def test_cancelled_before_signing_is_failed(
        self, registry: DeviceRegistry, nonce_store: NonceStore, ledger: PointsLedger
    ) -> None:
        entered = asyncio.Event()

        async def hang_while_building(to, amount, on_signed=None):
            entered.set()
            await asyncio.Event().wait()

        minter = make_minter(side_effect=hang_while_building)
        task = asyncio.create_task(_orchestrator(registry, nonce_store, ledger, minter).process(*_signed()))
        await entered.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        [record] = ledger.list_by_status(MintStatus.FAILED)
        assert record.tx_hash is None
        assert ledger.list_unsettled(stale_after=0) == []

    @pytest.mark.asyncio
    async def test_unjournaled_hash_blocks_broadcast(
        self, registry: DeviceRegistry, nonce_store: NonceStore, ledger: PointsLedger
    ) -> None:
        original_mark = ledger.mark

        def refuse_unknown(mint_id, status, **kwargs):
            if status == MintStatus.UNKNOWN:
                raise sqlite3.OperationalError("disk I/O error")
            return original_mark(mint_id, status, **kwargs)

        async def client_mint(to, amount, on_signed=None):
            try:
                on_signed(TX_HASH)
            except Exception as e:
                raise MintSubmissionError("Mint submission failed") from e
            raise AssertionError("broadcast after the hash was lost")

        minter = make_minter(side_effect=client_mint)
        with patch.object(ledger, "mark", side_effect=refuse_unknown):
            outcome = await _orchestrator(registry, nonce_store, ledger, minter).process(*_signed())

        assert isinstance(outcome.error, MintSubmissionError)
        assert outcome.error.ambiguous is False
        assert outcome.tx_hash is None
        assert ledger.get_record(outcome.mint_id).status == MintStatus.FAILED


class TestReconciliationFailures:
    @pytest.mark.asyncio
    async def test_ledger_failure_after_mint(
        self, registry: DeviceRegistry, nonce_store: NonceStore, ledger: PointsLedger, minter: MagicMock
    ) -> None:
        with patch.object(ledger, "apply_mint", side_effect=sqlite3.OperationalError("database is locked")):
            outcome = await _orchestrator(registry, nonce_store, ledger, minter).process(*_signed())

        assert isinstance(outcome.error, ReconciliationError)
        assert outcome.minted is True
        assert outcome.failed_from == MintState.MINTED
        assert outcome.tx_hash == TX_HASH
        assert ledger.get_record(outcome.mint_id).status == MintStatus.RECONCILE_FAILED
        assert ledger.get_totals(DEVICE, CLAIMANT) is None

    @pytest.mark.asyncio
    async def test_minted_status_write_fails(
        self, registry: DeviceRegistry, nonce_store: NonceStore, ledger: PointsLedger, minter: MagicMock
    ) -> None:
        original_mark = ledger.mark

        def flaky_mark(mint_id, status, **kwargs):
            if status == MintStatus.MINTED:
                raise sqlite3.OperationalError("locked")
            return original_mark(mint_id, status, **kwargs)

        with patch.object(ledger, "mark", side_effect=flaky_mark):
            outcome = await _orchestrator(registry, nonce_store, ledger, minter).process(*_signed())

        assert isinstance(outcome.error, ReconciliationError)
        assert outcome.minted is True
        record = ledger.get_record(outcome.mint_id)
        assert record.status == MintStatus.UNKNOWN
        assert record.tx_hash == TX_HASH

        minter.get_receipt_status = AsyncMock(return_value=1)
        reconciler = LedgerReconciler(ledger)
        assert (await reconciler.resolve_unknown(minter))["minted"] == 1
        assert reconciler.repair().repaired == [outcome.mint_id]
        assert ledger.get_totals(DEVICE, CLAIMANT).total_points == Decimal("15")

    @pytest.mark.asyncio
    async def test_unexpected_error_after_mint(
        self, registry: DeviceRegistry, nonce_store: NonceStore, ledger: PointsLedger, minter: MagicMock
    ) -> None:
        with patch.object(ledger, "apply_mint", side_effect=KeyError("surprise")):
            outcome = await _orchestrator(registry, nonce_store, ledger, minter).process(*_signed())
        assert isinstance(outcome.error, ReconciliationError)
        assert outcome.minted is True

    @pytest.mark.asyncio
    async def test_unexpected_error_before_mint(
        self, registry: DeviceRegistry, nonce_store: NonceStore, ledger: PointsLedger, minter: MagicMock
    ) -> None:
        with patch.object(registry, "find_bindings", side_effect=KeyError("surprise")):
            outcome = await _orchestrator(registry, nonce_store, ledger, minter).process(*_signed())
        assert type(outcome.error) is MintError
        assert outcome.error.message == "Internal error"
        assert outcome.minted is False
