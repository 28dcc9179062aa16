"""
Tests for BundleReservationEngine.

A bundle reservation is all-or-nothing: when a line cannot be reserved,
the lines reserved before it in the same pass are released again.
"""

from uuid import uuid4

import pytest
from sqlalchemy import func, select

from sales_kernel.domain.dtos import BundleLineSpec, BundleStatus, TransactionType
from sales_kernel.domain.values import Money
from sales_kernel.exceptions import (
    BundleNotFoundError,
    BundleStockUnavailableError,
    BundleTransitionInProgressError,
    BusyError,
    CurrencyMismatchError,
    InvalidQuantityError,
    ItemNotFoundError,
    PartialReservationFailureError,
)
from sales_kernel.models.bundle import Bundle
from sales_kernel.services.stock_ledger import StockLedger


@pytest.fixture
def two_items(make_item):
    """Two items with 10 units each, in the order the engine reserves them."""
    ids = [make_item(initial_stock=10), make_item(initial_stock=10)]
    return sorted(ids, key=str)


class TestCreateBundle:
    def test_reserves_every_line(self, bundles, two_items, stock_level, load_bundle):
        first, second = two_items

        result = bundles.create_bundle(
            "Starter kit",
            [BundleLineSpec(first, 2), BundleLineSpec(second, 3)],
            "USD",
        )

        assert dict(result.reserved) == {first: 2, second: 3}
        assert stock_level(first).reserved_stock == 2
        assert stock_level(second).reserved_stock == 3
        assert stock_level(first).current_stock == 10

        bundle = load_bundle(result.bundle_id)
        assert bundle.is_reserved
        assert bundle.status == BundleStatus.ACTIVE
        assert [line.line_number for line in bundle.lines] == [1, 2]

    def test_duplicate_item_lines_are_merged(self, bundles, make_item, stock_level, history):
        item_id = make_item(initial_stock=10)

        bundles.create_bundle(
            "Double", [BundleLineSpec(item_id, 2), BundleLineSpec(item_id, 3)], "USD"
        )

        assert stock_level(item_id).reserved_stock == 5
        reservations = [r for r in history(item_id) if r.transaction_type == TransactionType.RESERVATION]
        assert [r.quantity for r in reservations] == [5]

    def test_reference_names_the_bundle(self, bundles, make_item, history):
        item_id = make_item()
        result = bundles.create_bundle("Ref", [BundleLineSpec(item_id, 1)], "USD")

        reservation = [r for r in history(item_id) if r.transaction_type == TransactionType.RESERVATION][0]
        assert reservation.reference == f"bundle:{result.bundle_id}"

    def test_empty_bundle_rejected(self, bundles):
        with pytest.raises(InvalidQuantityError):
            bundles.create_bundle("Empty", [], "USD")

    def test_unknown_item_persists_nothing(self, uow, bundles, make_item, stock_level):
        item_id = make_item()

        with pytest.raises(ItemNotFoundError):
            bundles.create_bundle(
                "Ghost", [BundleLineSpec(item_id, 1), BundleLineSpec(uuid4(), 1)], "USD"
            )

        with uow.begin() as session:
            assert session.execute(select(func.count()).select_from(Bundle)).scalar() == 0
        assert stock_level(item_id).reserved_stock == 0

    def test_override_in_other_currency_rejected(self, bundles, make_item):
        item_id = make_item()
        with pytest.raises(CurrencyMismatchError):
            bundles.create_bundle(
                "Mixed", [BundleLineSpec(item_id, 1, Money.of("100.00", "BS"))], "USD"
            )


class TestAllOrNothing:
    def test_second_line_failure_releases_first(
        self, bundles, two_items, stock_level, history, only_bundle
    ):
        first, second = two_items

        with pytest.raises(BundleStockUnavailableError) as exc_info:
            bundles.create_bundle(
                "Too big", [BundleLineSpec(first, 3), BundleLineSpec(second, 50)], "USD"
            )

        error = exc_info.value
        assert error.failed_item_id == str(second)
        assert error.available == 10
        assert error.requested == 50

        assert stock_level(first).reserved_stock == 0
        assert stock_level(second).reserved_stock == 0
        reservations = [r for r in history(first) if r.transaction_type == TransactionType.RESERVATION]
        assert sorted(r.quantity for r in reservations) == [-3, 3]

        bundle = only_bundle()
        assert bundle.status == BundleStatus.INACTIVE
        assert not bundle.is_reserved

    def test_first_line_failure_reserves_nothing(self, bundles, two_items, history):
        first, second = two_items

        with pytest.raises(BundleStockUnavailableError) as exc_info:
            bundles.create_bundle(
                "Too big", [BundleLineSpec(first, 11), BundleLineSpec(second, 1)], "USD"
            )

        assert exc_info.value.failed_item_id == str(first)
        for item_id in two_items:
            assert not [r for r in history(item_id) if r.transaction_type == TransactionType.RESERVATION]

    def test_failed_compensation_is_reported(
        self, bundles, two_items, stock_level, monkeypatch, captured_logs
    ):
        first, second = two_items

        def _stuck_release(self, item_id, quantity, reference=None):
            raise BusyError(1.0)

        monkeypatch.setattr(StockLedger, "release", _stuck_release)

        with pytest.raises(PartialReservationFailureError) as exc_info:
            bundles.create_bundle(
                "Stuck", [BundleLineSpec(first, 3), BundleLineSpec(second, 50)], "USD"
            )

        assert exc_info.value.unreleased == [(str(first), 3)]
        assert stock_level(first).reserved_stock == 3

        critical = [r for r in captured_logs() if r["message"] == "bundle_compensation_failed"]
        assert len(critical) == 1
        assert critical[0]["level"] == "CRITICAL"


class TestReserveAndRelease:
    def test_reserve_again_is_a_no_op(self, bundles, make_item, stock_level):
        item_id = make_item(initial_stock=10)
        result = bundles.create_bundle("Once", [BundleLineSpec(item_id, 4)], "USD")

        again = bundles.reserve_for_bundle(result.bundle_id)

        assert dict(again.reserved) == {item_id: 4}
        assert stock_level(item_id).reserved_stock == 4

    def test_release_bundle(self, bundles, two_items, stock_level, load_bundle):
        first, second = two_items
        result = bundles.create_bundle(
            "Abandoned", [BundleLineSpec(first, 2), BundleLineSpec(second, 3)], "USD"
        )

        released = bundles.release_bundle(result.bundle_id)

        assert dict(released.reserved) == {first: 2, second: 3}
        assert stock_level(first).reserved_stock == 0
        assert stock_level(second).reserved_stock == 0
        bundle = load_bundle(result.bundle_id)
        assert bundle.status == BundleStatus.INACTIVE
        assert not bundle.is_reserved

    def test_release_twice_releases_once(self, bundles, make_item, ledger_ops, stock_level):
        item_id = make_item(initial_stock=10)
        result = bundles.create_bundle("Twice", [BundleLineSpec(item_id, 2)], "USD")
        ledger_ops("reserve", item_id, 5)

        bundles.release_bundle(result.bundle_id)
        second = bundles.release_bundle(result.bundle_id)

        assert second.reserved == ()
        assert stock_level(item_id).reserved_stock == 5

    def test_reserve_after_release_reactivates(self, bundles, make_item, stock_level, load_bundle):
        item_id = make_item(initial_stock=10)
        result = bundles.create_bundle("Again", [BundleLineSpec(item_id, 4)], "USD")
        bundles.release_bundle(result.bundle_id)

        bundles.reserve_for_bundle(result.bundle_id)

        assert stock_level(item_id).reserved_stock == 4
        bundle = load_bundle(result.bundle_id)
        assert bundle.status == BundleStatus.ACTIVE
        assert bundle.is_reserved

    def test_failed_reserve_restores_previous_status(
        self, bundles, make_item, ledger_ops, stock_level, load_bundle
    ):
        item_id = make_item(initial_stock=10)
        result = bundles.create_bundle("Crowded out", [BundleLineSpec(item_id, 4)], "USD")
        bundles.release_bundle(result.bundle_id)
        ledger_ops("reserve", item_id, 8)

        with pytest.raises(BundleStockUnavailableError):
            bundles.reserve_for_bundle(result.bundle_id)

        assert stock_level(item_id).reserved_stock == 8
        bundle = load_bundle(result.bundle_id)
        assert bundle.status == BundleStatus.INACTIVE
        assert not bundle.is_reserved

    @pytest.mark.parametrize("status", [BundleStatus.RESERVING, BundleStatus.RELEASING])
    def test_bundle_mid_transition_is_refused(self, bundles, uow, make_item, stock_level, status):
        item_id = make_item(initial_stock=10)
        result = bundles.create_bundle("Busy", [BundleLineSpec(item_id, 4)], "USD")
        with uow.begin() as session:
            session.get(Bundle, result.bundle_id).status = status.value

        with pytest.raises(BundleTransitionInProgressError) as exc_info:
            bundles.reserve_for_bundle(result.bundle_id)
        assert exc_info.value.retryable
        with pytest.raises(BundleTransitionInProgressError):
            bundles.release_bundle(result.bundle_id)

        assert stock_level(item_id).reserved_stock == 4

    def test_release_of_unreserved_bundle_only_deactivates(self, bundles, make_item, history, load_bundle):
        item_id = make_item(initial_stock=10)
        result = bundles.create_bundle("Idle", [BundleLineSpec(item_id, 4)], "USD")
        bundles.release_bundle(result.bundle_id)
        releases_before = len(history(item_id))

        again = bundles.release_bundle(result.bundle_id)

        assert again.reserved == ()
        assert len(history(item_id)) == releases_before
        assert load_bundle(result.bundle_id).status == BundleStatus.INACTIVE

    def test_unknown_bundle(self, bundles):
        with pytest.raises(BundleNotFoundError):
            bundles.reserve_for_bundle(uuid4())
        with pytest.raises(BundleNotFoundError):
            bundles.release_bundle(uuid4())


class TestNominalPrice:
    def test_overrides_and_base_prices(self, bundles, make_item):
        cheap = make_item(price="2.50")
        pricey = make_item(price="40.00")

        result = bundles.create_bundle(
            "Priced",
            [BundleLineSpec(cheap, 4), BundleLineSpec(pricey, 2, Money.of("70.00", "USD"))],
            "USD",
        )

        assert bundles.nominal_price(result.bundle_id) == Money.of("80.00", "USD")

    def test_converts_base_prices_with_bundle_rate(self, bundles, make_item):
        item_id = make_item(price="10.00", currency="USD")

        result = bundles.create_bundle("In BS", [BundleLineSpec(item_id, 2)], "BS", conversion_rate="36.50")

        assert bundles.nominal_price(result.bundle_id) == Money.of("730.00", "BS")
