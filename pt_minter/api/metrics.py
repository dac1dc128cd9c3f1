"""Prometheus collectors shared by the API, the orchestrator and the chain client.

Everything registers on the default registry and is served from `/metrics`.
"""

from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

# HTTP
REQUEST_COUNT = Counter(
    "pt_minter_requests_total",
    "HTTP responses by route template and status code",
    ["method", "endpoint", "status"],
)

REQUEST_LATENCY = Histogram(
    "pt_minter_request_latency_seconds",
    "Wall time spent handling a request",
    ["endpoint"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
)

# Minting
MINT_REQUESTS = Counter(
    "pt_minter_mint_requests_total",
    "Mint requests by terminal result",
    ["result"],  # completed, invalid_request, invalid_nonce, mint_submission_error, ...
)

MINT_DURATION = Histogram(
    "pt_minter_mint_duration_seconds",
    "Time from broadcast to confirmed receipt",
    buckets=(1.0, 2.5, 5.0, 10.0, 15.0, 30.0, 60.0, 120.0, 300.0),
)

POINTS_MINTED = Counter(
    "pt_minter_points_minted_total",
    "Points minted on-chain (whole points, float approximation)",
)

NONCE_ROTATIONS = Counter(
    "pt_minter_nonce_rotations_total",
    "Nonces rotated at the signature stage",
)

AMBIGUOUS_MINTS = Counter(
    "pt_minter_ambiguous_mints_total",
    "Mints broadcast without a confirmed outcome",
)

RECONCILIATION_FAILURES = Counter(
    "pt_minter_reconciliation_failures_total",
    "Confirmed mints whose ledger update failed",
)

RECONCILIATION_DEBT = Gauge(
    "pt_minter_reconciliation_debt",
    "Confirmed mints not yet applied to the aggregate ledger",
)

RPC_FAILOVERS = Counter(
    "pt_minter_rpc_failovers_total",
    "Switches to the next configured RPC URL after a connection error",
)

CIRCUIT_BREAKER_STATE = Gauge(
    "pt_minter_circuit_breaker_open",
    "1 while the named breaker refuses calls, 0 otherwise",
    ["target"],
)

RATE_LIMIT_REJECTIONS = Counter(
    "pt_minter_rate_limit_rejections_total",
    "Requests answered with 429 by the token-bucket limiter",
)


def render_metrics() -> tuple[bytes, str]:
    """Exposition body and its content type."""
    return generate_latest(), CONTENT_TYPE_LATEST
