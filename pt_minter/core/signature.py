"""Mint payload parsing and EIP-191 signature verification.

Clients sign ``JSON.stringify(message)`` with ``personal_sign``. The server
re-serializes the message object exactly as received (same key order, no
whitespace, non-ASCII left unescaped) and recovers the signer from that text.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

import structlog
from eth_account import Account
from eth_account.messages import encode_defunct
from web3 import Web3

from pt_minter.core.amounts import MIN_MINT_AMOUNT, validate_amount
from pt_minter.core.errors import InvalidNonce, InvalidRequest, InvalidSignature, NonceNotFound

log = structlog.get_logger()

_MAX_SAFE_INTEGER = 2**53 - 1


@dataclass(frozen=True)
class MintMessage:
    """The signed part of a mint request."""

    address: str
    publisher_name: str
    amount: str
    nonce: str
    raw: dict[str, Any]

    @property
    def canonical(self) -> str:
        return canonical_message(self.raw)


def canonical_message(message: dict[str, Any]) -> str:
    """Serialize ``message`` the way ``JSON.stringify`` does for plain JSON data.

    Only exact for strings, booleans, null, safe integers and containers of
    them; :func:`parse_mint_request` rejects every other number.
    """
    return json.dumps(message, separators=(",", ":"), ensure_ascii=False)


def _serializes_differently(value: Any) -> bool:
    """True for numbers whose JSON text differs between Python and JavaScript (1.0 vs 1)."""
    if isinstance(value, bool) or value is None or isinstance(value, str):
        return False
    if isinstance(value, int):
        return abs(value) > _MAX_SAFE_INTEGER
    if isinstance(value, dict):
        return any(_serializes_differently(v) for v in value.values())
    if isinstance(value, list):
        return any(_serializes_differently(v) for v in value)
    return True


def parse_mint_request(
    message: Any,
    signature: Any,
    minimum: Decimal | int = MIN_MINT_AMOUNT,
) -> tuple[MintMessage, str]:
    """Validate the request body fields. Raises InvalidRequest naming the bad field."""
    if not message or not signature or not isinstance(message, dict) or not isinstance(signature, str):
        raise InvalidRequest("missing params")

    address = message.get("address")
    if not isinstance(address, str) or not Web3.is_address(address):
        raise InvalidRequest("Invalid public address")

    publisher_name = message.get("publisherName")
    if not isinstance(publisher_name, str) or not publisher_name:
        raise InvalidRequest("Invalid publisher name")

    amount = message.get("amount")
    if not validate_amount(amount, minimum):
        raise InvalidRequest("Invalid amount")

    nonce = message.get("nonce")
    if not isinstance(nonce, str) or not nonce:
        raise InvalidRequest("Invalid nonce format")

    if _serializes_differently(message):
        raise InvalidRequest("Unsupported message value")

    return (
        MintMessage(
            address=address,
            publisher_name=publisher_name,
            amount=amount,  # type: ignore[arg-type]
            nonce=nonce,
            raw=message,
        ),
        signature,
    )


def recover_signer(text: str, signature: str) -> str:
    """Recover the address that personal-signed ``text``. Raises InvalidSignature."""
    try:
        return Account.recover_message(encode_defunct(text=text), signature=signature)
    except Exception as e:
        log.info("signature_recovery_failed", err=str(e))
        raise InvalidSignature()


def verify_signed_message(msg: MintMessage, signature: str, stored_nonce: str | None) -> str:
    """Check the nonce the client signed against the stored one, then the signer.

    ``stored_nonce`` is the value that was live when the request arrived (the
    caller has already rotated it). Returns the recovered signer address.
    """
    if stored_nonce is None:
        raise NonceNotFound()
    if msg.nonce != stored_nonce:
        raise InvalidNonce()
    signer = recover_signer(msg.canonical, signature)
    if signer.lower() != msg.address.lower():
        log.info("signer_mismatch", claimed=msg.address, recovered=signer)
        raise InvalidSignature()
    return signer
