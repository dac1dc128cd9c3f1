"""Signing helpers and test doubles shared across the suite."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any
from unittest.mock import AsyncMock, MagicMock

from eth_account import Account
from eth_account.messages import encode_defunct
from web3 import Web3

from pt_minter.chain.contracts import MintReceipt
from pt_minter.core.amounts import to_base_units
from pt_minter.core.signature import canonical_message

CLAIMANT_KEY = "0x" + "4c" * 32
OTHER_KEY = "0x" + "7a" * 32
CLAIMANT = Account.from_key(CLAIMANT_KEY).address
OTHER = Account.from_key(OTHER_KEY).address
DEVICE = "charger-001"
TX_HASH = "0x" + "ab" * 32


def sign(message: dict[str, Any], key: str = CLAIMANT_KEY) -> str:
    """personal_sign the JSON text of ``message`` the way a browser wallet would."""
    signed = Account.sign_message(encode_defunct(text=canonical_message(message)), private_key=key)
    return Web3.to_hex(signed.signature)


def make_message(
    nonce: str,
    amount: str = "15",
    address: str = CLAIMANT,
    publisher_name: str = DEVICE,
) -> dict[str, Any]:
    return {"address": address, "publisherName": publisher_name, "amount": amount, "nonce": nonce}


def confirm_mint(to: str, amount: str, on_signed: Callable[[str], None] | None = None) -> MintReceipt:
    """What PointsContractClient.mint does on success: report the hash, then confirm."""
    if on_signed is not None:
        on_signed(TX_HASH)
    return MintReceipt(tx_hash=TX_HASH, block_number=100, gas_used=60_000, amount_units=to_base_units(amount))


def make_minter(**mint_kwargs: Any) -> MagicMock:
    """A stand-in for PointsContractClient whose mint() confirms immediately."""
    minter = MagicMock()
    minter.to_units = MagicMock(side_effect=lambda amount: to_base_units(amount))
    if "side_effect" not in mint_kwargs and "return_value" not in mint_kwargs:
        mint_kwargs["side_effect"] = confirm_mint
    minter.mint = AsyncMock(**mint_kwargs)
    minter.can_write = True
    minter.is_connected = AsyncMock(return_value=True)
    minter.get_receipt_status = AsyncMock(return_value=None)
    return minter
