"""FastAPI server for the points minter REST API.

Endpoints:
- POST /v1/pt-mint: Mint points for a signed, nonce-bearing message
- POST /functions/v1/pt-mint: Same handler at the path existing clients call
- GET  /v1/nonce/{address}: Current signing challenge for an address
- GET  /v1/mints/debt: Minted-but-unreconciled, ambiguous and stale pending mints (admin)
- POST /v1/mints/reconcile: Replay reconciliation debt (admin)
- GET  /health, /health/ready: Health and readiness probes
- GET  /metrics: Prometheus metrics
"""

from __future__ import annotations

import os
import sqlite3
import time
from decimal import Decimal
from typing import TYPE_CHECKING

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import JSONResponse
from web3 import Web3

from pt_minter import __version__
from pt_minter.api.metrics import REQUEST_COUNT, REQUEST_LATENCY, render_metrics
from pt_minter.api.middleware import (
    RateLimiter,
    RateLimitMiddleware,
    RequestIdMiddleware,
    get_cors_origins,
    require_admin_token,
)
from pt_minter.api.models import (
    DebtResponse,
    HealthResponse,
    MintErrorResponse,
    MintRecordModel,
    MintRequest,
    NonceResponse,
    ReadinessResponse,
    ReconcileResponse,
)
from pt_minter.core.amounts import MIN_MINT_AMOUNT
from pt_minter.core.errors import MintSubmissionError
from pt_minter.core.ledger import DEBT_STATUSES, MintStatus, PointsLedger
from pt_minter.core.mint import MintOrchestrator, MintOutcome
from pt_minter.core.nonces import NonceStore
from pt_minter.core.reconciler import LedgerReconciler
from pt_minter.core.registry import DeviceRegistry

if TYPE_CHECKING:
    from pt_minter.chain.contracts import PointsContractClient

log = structlog.get_logger()

_MAX_BODY_BYTES = 65_536


def _oversized_body(request: Request) -> JSONResponse | None:
    """Reject bodies whose declared size is too large, malformed or missing on writes."""
    declared = request.headers.get("content-length")
    if declared is None:
        chunked = "chunked" in request.headers.get("transfer-encoding", "").lower()
        if chunked and request.method in ("POST", "PUT", "PATCH"):
            return JSONResponse(status_code=411, content={"error": "Content-Length header required"})
        return None
    if not declared.isdigit():
        return JSONResponse(status_code=400, content={"error": "Invalid Content-Length header"})
    if int(declared) > _MAX_BODY_BYTES:
        return JSONResponse(status_code=413, content={"error": "Request body too large"})
    return None


def _outcome_response(outcome: MintOutcome) -> JSONResponse:
    if outcome.ok:
        return JSONResponse(status_code=200, content={})
    assert outcome.error is not None
    body = MintErrorResponse(error=outcome.error.message)
    if outcome.minted:
        body.minted = True
        body.txHash = outcome.tx_hash
        body.mintId = outcome.mint_id
    elif isinstance(outcome.error, MintSubmissionError) and outcome.error.ambiguous:
        body.txHash = outcome.tx_hash
        body.mintId = outcome.mint_id
    return JSONResponse(status_code=400, content=body.model_dump(exclude_none=True))


def create_app(
    registry: DeviceRegistry,
    nonce_store: NonceStore,
    ledger: PointsLedger,
    minter: PointsContractClient,
    rate_limit_capacity: int = 30,
    rate_limit_rate: int = 5,
    min_amount: Decimal | int = MIN_MINT_AMOUNT,
    admin_token: str = "",
    cors_origins: str | None = None,
    environment: str | None = None,
) -> FastAPI:
    """Create the FastAPI application with injected dependencies."""
    environment = environment if environment is not None else os.getenv("ENVIRONMENT", "development")
    orchestrator = MintOrchestrator(
        registry=registry,
        nonce_store=nonce_store,
        ledger=ledger,
        minter=minter,
        min_amount=min_amount,
    )
    reconciler = LedgerReconciler(ledger)

    app = FastAPI(
        title="PT Minter",
        version=__version__,
        description="Signed loyalty points minting API",
    )

    # Catch unhandled exceptions: never leak stack traces to clients
    @app.exception_handler(Exception)
    async def _unhandled_error(request: Request, exc: Exception) -> JSONResponse:
        log.error(
            "unhandled_exception",
            error=str(exc),
            path=request.url.path,
            method=request.method,
            exc_info=True,
        )
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)

    # Unparseable bodies get the same shape as any other rejected mint
    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        log.info("request_validation_failed", path=request.url.path, errors=len(exc.errors()))
        return JSONResponse(status_code=400, content={"error": "missing params"})

    app.add_middleware(
        CORSMiddleware,
        allow_origins=get_cors_origins(
            cors_origins if cors_origins is not None else os.getenv("CORS_ORIGINS", ""),
            environment,
        ),
        allow_credentials=False,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["authorization", "x-client-info", "apikey", "content-type", "x-request-id"],
    )

    @app.middleware("http")
    async def limit_body_size(request: Request, call_next):  # type: ignore[no-untyped-def]
        rejection = _oversized_body(request)
        return rejection if rejection is not None else await call_next(request)

    @app.middleware("http")
    async def record_metrics(request: Request, call_next):  # type: ignore[no-untyped-def]
        started = time.monotonic()
        response = await call_next(request)
        # the router records the matched route in the shared scope
        endpoint = getattr(request.scope.get("route"), "path", "unmatched")
        REQUEST_COUNT.labels(method=request.method, endpoint=endpoint, status=response.status_code).inc()
        REQUEST_LATENCY.labels(endpoint=endpoint).observe(time.monotonic() - started)
        return response

    limiter = RateLimiter(default_capacity=rate_limit_capacity, default_rate=rate_limit_rate)
    limiter.set_path_limit("/v1/nonce", capacity=60, rate=10)
    limiter.set_path_limit("/v1/mints", capacity=10, rate=1)
    app.add_middleware(RateLimitMiddleware, limiter=limiter)

    # Request ID tracing (outermost: must be added last)
    app.add_middleware(RequestIdMiddleware)

    @app.post("/v1/pt-mint", responses={400: {"model": MintErrorResponse}})
    @app.post("/functions/v1/pt-mint", include_in_schema=False)
    async def pt_mint(req: MintRequest) -> JSONResponse:
        """Verify the signed message and mint points to the claimant."""
        outcome = await orchestrator.process(req.message, req.signature)
        return _outcome_response(outcome)

    @app.get("/v1/nonce/{address}", response_model=NonceResponse)
    async def get_nonce(address: str) -> NonceResponse:
        """Return the nonce the address must include in its next signed message."""
        if not Web3.is_address(address):
            raise HTTPException(status_code=400, detail="Invalid public address")
        nonce = nonce_store.get(address)
        if nonce is None:
            raise HTTPException(status_code=404, detail="Nonce does not exist")
        return NonceResponse(address=address, nonce=nonce)

    @app.get("/v1/mints/debt", response_model=DebtResponse)
    async def mint_debt(request: Request) -> DebtResponse:
        """List mints that moved (or may have moved) funds without bookkeeping, plus stale pending ones."""
        require_admin_token(request, admin_token)
        records = ledger.list_unsettled()
        return DebtResponse(
            count=len(records),
            records=[MintRecordModel(**r.to_dict()) for r in records],
        )

    @app.post("/v1/mints/reconcile", response_model=ReconcileResponse)
    async def reconcile_mints(request: Request) -> ReconcileResponse:
        """Settle ambiguous mints from chain state, then replay reconciliation debt."""
        require_admin_token(request, admin_token)
        resolved = await reconciler.resolve_unknown(minter)
        report = reconciler.repair()
        outstanding = reconciler.refresh_debt_gauge()
        log.info(
            "reconcile_requested",
            repaired=len(report.repaired),
            failed=len(report.failed),
            resolved=resolved,
        )
        return ReconcileResponse(
            repaired=report.repaired,
            alreadyApplied=report.already_applied,
            failed=report.failed,
            resolved=resolved,
            outstanding=max(outstanding, 0),
        )

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        """Health check endpoint."""
        chain_ok = False
        try:
            chain_ok = await minter.is_connected()
        except Exception as e:
            log.warning("chain_health_check_failed", error=str(e))

        debt = 0
        try:
            debt = ledger.count_by_status(*DEBT_STATUSES)
        except sqlite3.Error as e:
            log.warning("ledger_health_check_failed", error=str(e))

        return HealthResponse(
            status="ok",
            version=__version__,
            chain_connected=chain_ok,
            minter_configured=minter.can_write,
            reconciliation_debt=debt,
        )

    @app.get("/health/ready", response_model=ReadinessResponse)
    async def readiness() -> ReadinessResponse:
        """Deep readiness probe: checks RPC, signer, and stores."""
        checks: dict[str, bool] = {}
        try:
            checks["rpc"] = await minter.is_connected()
        except Exception as e:
            log.warning("readiness_check_failed", check="rpc", error=str(e))
            checks["rpc"] = False
        checks["minter_configured"] = minter.can_write

        for name, probe in (
            ("device_registry", lambda: registry.count),
            ("nonce_store", lambda: nonce_store.count),
            ("ledger", lambda: ledger.count_by_status(MintStatus.PENDING)),
        ):
            try:
                probe()
                checks[name] = True
            except sqlite3.Error as e:
                log.warning("readiness_check_failed", check=name, error=str(e))
                checks[name] = False

        return ReadinessResponse(ready=all(checks.values()), checks=checks)

    @app.get("/metrics")
    async def metrics() -> Response:
        body, content_type = render_metrics()
        return Response(content=body, media_type=content_type)

    return app
