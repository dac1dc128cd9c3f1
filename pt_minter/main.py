"""Entry point for the points minter service.

Starts the FastAPI server and, when RECONCILE_INTERVAL is set, the
reconciliation repair loop.
"""

from __future__ import annotations

import asyncio
import os
import signal
from pathlib import Path
from urllib.parse import urlsplit

import structlog
import uvicorn

from pt_minter import __version__
from pt_minter.logging import configure_logging

configure_logging()

from pt_minter.api.server import create_app
from pt_minter.chain.contracts import PointsContractClient
from pt_minter.config import Config
from pt_minter.core.ledger import PointsLedger
from pt_minter.core.nonces import NonceStore
from pt_minter.core.reconciler import LedgerReconciler
from pt_minter.core.registry import DeviceRegistry

log = structlog.get_logger()

SHUTDOWN_GRACE = 15.0
_DEFAULT_PORTS = {"http": 80, "https": 443, "ws": 80, "wss": 443}


def _redact_rpc_url(url: str) -> str:
    """Reduce an RPC URL to scheme, host and port; provider keys often live in the path."""
    parts = urlsplit(url)
    try:
        port = parts.port or _DEFAULT_PORTS.get(parts.scheme, 443)
    except ValueError:
        return "<unparseable>"
    if not parts.hostname:
        return "<unparseable>"
    return f"{parts.scheme}://{parts.hostname}:{port}"


async def reconcile_loop(
    reconciler: LedgerReconciler,
    minter: PointsContractClient,
    interval: float,
) -> None:
    """Periodically settle ambiguous mints and replay reconciliation debt."""
    log.info("reconcile_loop_started", interval=interval)
    while True:
        try:
            await asyncio.sleep(interval)
            resolved = await reconciler.resolve_unknown(minter)
            report = reconciler.repair()
            settled = sum(resolved.get(key, 0) for key in ("minted", "reverted", "abandoned"))
            if settled or report.repaired or report.failed:
                log.info(
                    "reconcile_loop_pass",
                    resolved=resolved,
                    repaired=len(report.repaired),
                    failed=len(report.failed),
                )
        except asyncio.CancelledError:
            log.info("reconcile_loop_cancelled")
            return
        except Exception as e:
            log.error("reconcile_loop_error", error=str(e))


async def serve_api(app: object, config: Config) -> None:
    server = uvicorn.Server(
        uvicorn.Config(
            app,
            host=config.api_host,
            port=config.api_port,
            log_level="info",
            timeout_keep_alive=65,
            timeout_graceful_shutdown=10,
        )
    )
    await server.serve()


def _on_signal(sig: signal.Signals, stop_requested: asyncio.Event) -> None:
    log.info("shutdown_signal", signal=sig.name)
    stop_requested.set()


async def _stop(tasks: list[asyncio.Task], minter: PointsContractClient, stores: dict[str, object]) -> None:
    for task in tasks:
        task.cancel()
    _, still_running = await asyncio.wait(tasks, timeout=SHUTDOWN_GRACE)
    if still_running:
        log.warning("shutdown_timeout", pending=len(still_running), grace=SHUTDOWN_GRACE)
    try:
        await minter.close()
    except Exception as e:
        log.warning("points_client_close_error", error=str(e))
    for name, store in stores.items():
        try:
            store.close()
        except Exception as e:
            log.warning("store_close_error", store=name, error=str(e))


async def async_main() -> None:
    """Start the minter API and its background loops."""
    config = Config()
    for problem in config.validate():
        log.warning("config_warning", msg=problem)

    store_dir = Path(config.data_dir).resolve()
    store_dir.mkdir(parents=True, exist_ok=True)
    registry = DeviceRegistry(db_path=str(store_dir / "devices.db"))
    nonce_store = NonceStore(db_path=str(store_dir / "nonces.db"))
    ledger = PointsLedger(db_path=str(store_dir / "ledger.db"))
    reconciler = LedgerReconciler(ledger)

    minter = PointsContractClient(
        rpc_url=config.ethereum_rpc_urls,
        contract_address=config.points_contract_address,
        private_key=config.private_key,
        chain_id=config.chain_id,
        decimals=config.points_decimals,
        confirmation_timeout=config.mint_confirmation_timeout,
        rpc_timeout=config.rpc_timeout,
    )

    app = create_app(
        registry=registry,
        nonce_store=nonce_store,
        ledger=ledger,
        minter=minter,
        rate_limit_capacity=config.rate_limit_capacity,
        rate_limit_rate=config.rate_limit_rate,
        min_amount=config.min_mint_amount,
        admin_token=config.admin_token,
        cors_origins=config.cors_origins,
        environment=config.environment,
    )

    outstanding = reconciler.refresh_debt_gauge()
    if outstanding > 0:
        log.warning("reconciliation_debt_outstanding", count=outstanding)

    log.info(
        "minter_starting",
        version=__version__,
        host=config.api_host,
        port=config.api_port,
        environment=config.environment,
        rpc_url=_redact_rpc_url(minter.rpc_url),
        rpc_url_count=minter.rpc_url_count,
        contract=config.points_contract_address,
        minting_enabled=minter.can_write,
        minter_address=minter.minter_address or "none",
        log_format=os.getenv("LOG_FORMAT", "console"),
    )

    tasks = [asyncio.create_task(serve_api(app, config), name="api")]
    if config.reconcile_interval > 0:
        tasks.append(
            asyncio.create_task(
                reconcile_loop(reconciler, minter, config.reconcile_interval),
                name="reconcile",
            )
        )

    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _on_signal, sig, stop_requested)

    # uvicorn exiting on its own (bind failure, for instance) also stops the service
    tasks[0].add_done_callback(lambda _: stop_requested.set())

    await stop_requested.wait()
    log.info("shutting_down")
    await _stop(tasks, minter, {"registry": registry, "nonce_store": nonce_store, "ledger": ledger})
    log.info("shutdown_complete")


def main() -> None:
    """Start the points minter."""
    asyncio.run(async_main())


if __name__ == "__main__":
    main()
