"""Fixtures for building deals in a given lifecycle state."""

from __future__ import annotations

from decimal import Decimal

import pytest

BUYER = "buyer-1"
SELLER = "seller-1"


@pytest.fixture
def buyer_address(address_for) -> str:
    return address_for("buyer-refund")


@pytest.fixture
def seller_address(address_for) -> str:
    return address_for("seller-payout")


@pytest.fixture
def platform_address(address_for) -> str:
    return address_for("platform-fees")


@pytest.fixture
def open_deal(engine, buyer_address, seller_address):
    """Factory: a deal with both wallets bound, waiting for payment."""

    async def factory(amount: str = "0.01", asset: str = "BTC", options=None):
        created = await engine.create_deal(BUYER, SELLER, Decimal(amount), asset, options)
        assert created.success, created.message
        deal = created.data
        buyer = await engine.set_party_wallet(deal.id, "buyer", buyer_address, BUYER)
        assert buyer.success, buyer.message
        seller = await engine.set_party_wallet(deal.id, "seller", seller_address, SELLER)
        assert seller.success, seller.message
        assert seller.data.escrow_assigned
        return seller.data.deal

    return factory


@pytest.fixture
def funded_deal(engine, gateway, open_deal):
    """Factory: a FUNDED deal holding ``paid_sats`` at its escrow address."""

    async def factory(amount: str = "0.01", paid_sats: int | None = None, options=None):
        deal = await open_deal(amount, options=options)
        gateway.fund(deal.escrow_address, paid_sats if paid_sats is not None else deal.amount_sats)
        status = await engine.check_payment(deal.id)
        assert status.success, status.message
        assert status.data.funded
        return deal

    return factory


@pytest.fixture
async def payout_wallet(admin, platform_address) -> str:
    result = await admin.set_payout_wallet("admin-1", "BTC", platform_address, label="fees")
    assert result.success, result.message
    return platform_address
