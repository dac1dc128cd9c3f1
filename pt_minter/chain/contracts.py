"""On-chain interaction layer for the points contract.

Provides a typed wrapper around ``mint(address to, uint256 amount)``: the
transaction is built and signed locally with the minter key, broadcast, and
awaited until its receipt arrives. Supports multiple RPC URLs with automatic
failover on connection errors.

Outcome classes:
- rejected before broadcast -> MintSubmissionError(ambiguous=False)
- handed to an RPC but not confirmed -> MintSubmissionError(ambiguous=True)
- mined with status 0 -> MintExecutionError
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import structlog
from eth_account import Account
from web3 import AsyncWeb3, Web3
from web3.contract import AsyncContract
from web3.exceptions import TimeExhausted, TransactionNotFound

from pt_minter.api.metrics import AMBIGUOUS_MINTS, MINT_DURATION, RPC_FAILOVERS
from pt_minter.core.amounts import POINTS_DECIMALS, to_base_units
from pt_minter.core.errors import MintExecutionError, MintSubmissionError
from pt_minter.utils.circuit_breaker import CircuitBreaker

log = structlog.get_logger()

POINTS_ABI = [
    {
        "inputs": [
            {"name": "to", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "name": "mint",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]

# Errors meaning the endpoint itself is unreachable; anything else is the node's answer
_UNREACHABLE = (ConnectionError, OSError, TimeoutError)


def _split_urls(rpc_url: str | list[str]) -> list[str]:
    candidates = rpc_url.split(",") if isinstance(rpc_url, str) else rpc_url
    return [u.strip() for u in candidates if u.strip()] or ["http://localhost:8545"]


@dataclass(frozen=True)
class MintReceipt:
    tx_hash: str
    block_number: int
    gas_used: int
    amount_units: int


class PointsContractClient:
    """Async client that mints points through the configured contract.

    Pass a comma-separated string or a list of RPC URLs. On connection failure
    the client rotates to the next endpoint and retries. Rebroadcasting the
    same signed bytes elsewhere is harmless: it carries the same tx hash.
    """

    def __init__(
        self,
        rpc_url: str | list[str],
        contract_address: str,
        private_key: str = "",
        chain_id: int | None = None,
        decimals: int = POINTS_DECIMALS,
        confirmation_timeout: float = 120.0,
        rpc_timeout: int = 30,
        poll_latency: float = 1.0,
    ) -> None:
        self._endpoints = _split_urls(rpc_url)
        self._active = 0
        self._contract_address = contract_address
        self._chain_id = chain_id
        self._decimals = decimals
        self._confirmation_timeout = confirmation_timeout
        self._rpc_timeout = rpc_timeout
        self._poll_latency = poll_latency
        self._account = Account.from_key(private_key) if private_key else None
        # one key means one nonce sequence: build and broadcast never interleave
        self._send_lock = asyncio.Lock()
        self._breaker = CircuitBreaker(name="rpc", failure_threshold=3, recovery_timeout=30.0)
        self._connect(self._endpoints[0])

    def _connect(self, url: str) -> None:
        """Point the web3 client and the contract binding at ``url``."""
        self._w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(url, request_kwargs={"timeout": self._rpc_timeout}))
        self._points: AsyncContract | None = None
        try:
            self._points = self._w3.eth.contract(
                address=Web3.to_checksum_address(self._contract_address),
                abi=POINTS_ABI,
            )
        except ValueError:
            log.error("invalid_contract_address", contract="points", address=self._contract_address)

    def _advance_endpoint(self) -> bool:
        if len(self._endpoints) < 2:
            return False
        previous = self._active
        self._active = (previous + 1) % len(self._endpoints)
        log.warning("rpc_failover", from_index=previous, to_index=self._active, url=self.rpc_url)
        self._connect(self.rpc_url)
        return True

    async def _call(self, make_call: Callable[[], Awaitable[Any]]) -> Any:
        """Run ``make_call`` against the active endpoint, moving on while endpoints are unreachable.

        ``make_call`` must look up ``self._w3`` and ``self._points`` when invoked
        so a retry reaches the newly connected endpoint.
        """
        attempt = 1
        while True:
            try:
                result = await make_call()
            except _UNREACHABLE as e:
                if attempt >= len(self._endpoints) or not self._advance_endpoint():
                    self._breaker.record_failure()
                    raise
                RPC_FAILOVERS.inc()
                log.warning("rpc_call_failed_retrying", err=str(e), attempt=attempt)
                attempt += 1
                continue
            except asyncio.CancelledError:
                self._breaker.release_probe()
                raise
            except Exception:
                # the node answered, so the endpoint is healthy even if the call was rejected
                self._breaker.record_success()
                raise
            self._breaker.record_success()
            return result

    async def _build_signed_mint(self, to: str, units: int) -> Any:
        assert self._account is not None and self._points is not None
        sender = self._account.address
        tx_nonce = await self._w3.eth.get_transaction_count(sender, "pending")
        params: dict[str, Any] = {"from": sender, "nonce": tx_nonce}
        if self._chain_id is not None:
            params["chainId"] = self._chain_id
        tx = await self._points.functions.mint(Web3.to_checksum_address(to), units).build_transaction(params)
        return self._account.sign_transaction(tx)

    def to_units(self, amount: str) -> int:
        return to_base_units(amount, self._decimals)

    async def mint(
        self,
        to: str,
        amount: str,
        on_signed: Callable[[str], None] | None = None,
    ) -> MintReceipt:
        """Mint ``amount`` points (decimal string) to ``to`` and wait for the receipt.

        ``on_signed`` receives the transaction hash after signing and before the
        bytes leave the process; if it raises, nothing is broadcast.

        Raises AmountConversionError, MintSubmissionError or MintExecutionError.
        """
        units = self.to_units(amount)

        if self._account is None or self._points is None:
            log.error("minter_not_configured", has_key=self._account is not None)
            raise MintSubmissionError("Mint submission failed: minter not configured")
        async with self._send_lock:
            if not self._breaker.allow_request():
                log.warning("mint_refused_circuit_open", retry_after=round(self._breaker.retry_after, 1))
                raise MintSubmissionError("Mint submission failed: RPC unavailable")
            try:
                signed = await self._call(lambda: self._build_signed_mint(to, units))
            except Exception as e:
                log.error("mint_build_failed", to=to, amount=amount, err=str(e))
                raise MintSubmissionError("Mint submission failed") from e

            tx_hash = Web3.to_hex(signed.hash)
            if on_signed is not None:
                try:
                    on_signed(tx_hash)
                except Exception as e:
                    log.error("mint_signed_hook_failed", to=to, tx_hash=tx_hash, err=str(e))
                    raise MintSubmissionError("Mint submission failed") from e
            try:
                await self._call(lambda: self._w3.eth.send_raw_transaction(signed.raw_transaction))
            except Exception as e:
                AMBIGUOUS_MINTS.inc()
                log.error("mint_broadcast_uncertain", to=to, amount=amount, tx_hash=tx_hash, err=str(e))
                raise MintSubmissionError("Mint outcome unknown", ambiguous=True, tx_hash=tx_hash) from e

        log.info("mint_broadcast", to=to, amount=amount, tx_hash=tx_hash)
        started = time.monotonic()
        try:
            receipt = await self._w3.eth.wait_for_transaction_receipt(
                tx_hash,
                timeout=self._confirmation_timeout,
                poll_latency=self._poll_latency,
            )
        except TimeExhausted as e:
            AMBIGUOUS_MINTS.inc()
            log.error("mint_confirmation_timeout", tx_hash=tx_hash, timeout=self._confirmation_timeout)
            raise MintSubmissionError("Mint outcome unknown", ambiguous=True, tx_hash=tx_hash) from e
        except Exception as e:
            AMBIGUOUS_MINTS.inc()
            log.error("mint_confirmation_failed", tx_hash=tx_hash, err=str(e))
            raise MintSubmissionError("Mint outcome unknown", ambiguous=True, tx_hash=tx_hash) from e
        MINT_DURATION.observe(time.monotonic() - started)

        if receipt["status"] != 1:
            log.error("mint_reverted", tx_hash=tx_hash, block=receipt.get("blockNumber"))
            raise MintExecutionError(tx_hash=tx_hash)

        log.info("mint_confirmed", tx_hash=tx_hash, block=receipt.get("blockNumber"))
        return MintReceipt(
            tx_hash=tx_hash,
            block_number=receipt.get("blockNumber", 0),
            gas_used=receipt.get("gasUsed", 0),
            amount_units=units,
        )

    async def get_receipt_status(self, tx_hash: str) -> int | None:
        """On-chain status of a previously broadcast mint: 1, 0, or None if not mined."""
        try:
            receipt = await self._call(lambda: self._w3.eth.get_transaction_receipt(tx_hash))
        except TransactionNotFound:
            return None
        return int(receipt["status"])

    async def close(self) -> None:
        """Release the HTTP session held by the active provider."""
        disconnect = getattr(self._w3.provider, "disconnect", None)
        if disconnect is None:
            return
        try:
            await asyncio.wait_for(disconnect(), timeout=5.0)
        except TimeoutError:
            log.warning("points_client_close_timeout")
        except Exception as e:
            log.warning("points_client_close_error", err=str(e))

    async def is_connected(self) -> bool:
        """True once any configured endpoint answers a block number query."""
        for _ in self._endpoints:
            try:
                await self._w3.eth.block_number
            except _UNREACHABLE:
                if self._advance_endpoint():
                    continue
                return False
            except Exception as e:
                log.warning("rpc_connection_failed", err=str(e))
                return False
            return True
        return False

    @property
    def can_write(self) -> bool:
        return self._account is not None and self._points is not None

    @property
    def minter_address(self) -> str:
        return self._account.address if self._account else ""

    @property
    def rpc_url(self) -> str:
        return self._endpoints[self._active]

    @property
    def rpc_url_count(self) -> int:
        return len(self._endpoints)
