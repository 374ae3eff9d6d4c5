import pytest
from decimal import Decimal
from datetime import datetime, timezone

from domain.entities import (
    Account,
    Service,
    Transaction,
    TransactionKind,
    DepositEvent,
    to_units,
    from_units,
    format_amount,
    MAX_UNITS,
)
from domain.services import KeywordServiceResolver
from domain.exceptions import (
    QueryStage,
    InsufficientFundsError,
    UpstreamTimeoutError,
    UnauthorizedError
)


def make_service(**overrides):
    fields = dict(
        id="svc-1",
        owner_account_id="0xseller",
        name="img-gen",
        endpoint_url="https://seller.example/api",
        price_per_query=Decimal("0.1"),
    )
    fields.update(overrides)
    return Service(**fields)


def test_to_units_exact():
    assert to_units(Decimal("1")) == 100_000_000
    assert to_units(Decimal("0.1")) == 10_000_000
    assert to_units(Decimal("0.00000001")) == 1
    assert to_units(Decimal("0")) == 0


def test_to_units_rejects_invalid_amounts():
    with pytest.raises(ValueError):
        to_units(Decimal("-0.1"))
    with pytest.raises(ValueError):
        to_units(Decimal("0.000000001"))
    with pytest.raises(ValueError):
        to_units(Decimal("NaN"))
    with pytest.raises(ValueError):
        to_units("not-a-number")
    with pytest.raises(ValueError):
        to_units(Decimal(MAX_UNITS + 1) / 10 ** 8)


def test_from_units_keeps_ledger_precision():
    assert from_units(150_000_000) == Decimal("1.5")
    assert format_amount(from_units(1)) == "0.00000001"
    assert format_amount(from_units(50)) == "0.00000050"
    assert from_units(to_units(Decimal("4.2"))) == Decimal("4.2")


def test_account_negative_balance():
    with pytest.raises(ValueError):
        Account(id="0xbuyer", balance=Decimal("-1"))


def test_service_creation():
    service = make_service(keywords=["image"])
    assert service.unpaid_balance == Decimal("0")
    assert service.is_active


def test_service_invalid_fields():
    with pytest.raises(ValueError):
        make_service(name=" ")
    with pytest.raises(ValueError):
        make_service(price_per_query=Decimal("-0.1"))
    with pytest.raises(ValueError):
        make_service(price_per_query=Decimal("0.123456789"))
    with pytest.raises(ValueError):
        make_service(endpoint_url="ftp://seller.example")
    with pytest.raises(ValueError):
        make_service(endpoint_url="not a url")


def test_refund_requires_original_charge():
    with pytest.raises(ValueError):
        Transaction(
            id=None,
            service_id="svc-1",
            seller_account_id="0xseller",
            buyer_account_id="0xbuyer",
            amount=Decimal("0.1"),
            created_at=datetime.now(timezone.utc),
            kind=TransactionKind.REFUND
        )


def test_deposit_event_normalizes_addresses():
    event = DepositEvent(
        tx_hash="0xABC",
        from_address=" 0xAbCdEf ",
        to_address="0xTREASURY",
        value=10,
        block_number=7
    )
    assert event.tx_hash == "0xabc"
    assert event.from_address == "0xabcdef"
    assert event.to_address == "0xtreasury"
    assert event.log_index == -1


def test_deposit_credit_amount_scales_by_decimals():
    event = DepositEvent("0x1", "0xa", "0xb", value=10 ** 18, block_number=1)
    assert event.credit_amount(18) == Decimal("1")

    dust = DepositEvent("0x2", "0xa", "0xb", value=123456789012, block_number=1)
    assert dust.credit_amount(18) == Decimal("0.00000012")

    usdc = DepositEvent("0x3", "0xa", "0xb", value=2_500_000, block_number=1)
    assert usdc.credit_amount(6) == Decimal("2.5")

    units = DepositEvent("0x4", "0xa", "0xb", value=10, block_number=1)
    assert units.credit_amount(0) == Decimal("10")


def test_deposit_event_rejects_negative_value():
    with pytest.raises(ValueError):
        DepositEvent("0x1", "0xa", "0xb", value=-1, block_number=1)


def test_query_errors_carry_stage():
    assert InsufficientFundsError("x").stage == QueryStage.DEBITING
    assert UpstreamTimeoutError("x").stage == QueryStage.FORWARDING
    assert UnauthorizedError("x", stage=QueryStage.RESPONDING).stage == QueryStage.RESPONDING


@pytest.mark.asyncio
async def test_keyword_resolver_matches_first_active_service():
    services = [
        make_service(id="svc-off", keywords=["image"], is_active=False),
        make_service(id="svc-img", keywords=["Image", "draw"]),
        make_service(id="svc-text", keywords=["summarize"]),
    ]
    resolver = KeywordServiceResolver()

    assert await resolver.resolve("Please draw a cat", services) == "svc-img"
    assert await resolver.resolve("generate an IMAGE", services) == "svc-img"
    assert await resolver.resolve("summarize this", services) == "svc-text"
    assert await resolver.resolve("translate this", services) is None


@pytest.mark.asyncio
async def test_keyword_resolver_empty_prompt():
    with pytest.raises(ValueError):
        await KeywordServiceResolver().resolve("   ", [make_service()])
