"""Tests for the structured logging system (sales_kernel/logging_config.py)."""

import json
import logging
from decimal import Decimal
from io import StringIO
from uuid import uuid4

import pytest

from sales_kernel.domain.dtos import CartLine, PaymentStatus
from sales_kernel.domain.values import Money
from sales_kernel.exceptions import InsufficientStockError
from sales_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    get_logger,
    reset_logging,
)
from tests.conftest import TEST_CLIENT_ID


@pytest.fixture
def _clean_logging():
    """Reset logging state, then restore the suite-wide configuration."""
    reset_logging()
    yield
    reset_logging()
    configure_logging(level=logging.DEBUG, stream=StringIO())


def _make_handler() -> tuple[logging.Handler, StringIO]:
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    return handler, stream


def _parse_log(stream: StringIO) -> dict:
    """Parse the first JSON log line from a stream."""
    line = stream.getvalue().strip().split("\n")[0]
    return json.loads(line)


def _parse_all_logs(stream: StringIO) -> list[dict]:
    lines = stream.getvalue().strip().split("\n")
    return [json.loads(line) for line in lines if line]


# ---------------------------------------------------------------------------
# StructuredFormatter tests
# ---------------------------------------------------------------------------


@pytest.mark.usefixtures("_clean_logging")
class TestStructuredFormatter:
    """Tests for JSON log output format."""

    def test_basic_json_output(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info("hello")

        record = _parse_log(stream)
        assert record["level"] == "INFO"
        assert record["message"] == "hello"
        assert record["logger"] == "sales_kernel.test"
        assert "ts" in record

    def test_extra_fields_included(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info("stock_moved", extra={"quantity": 4, "sku": "SKU-1"})

        record = _parse_log(stream)
        assert record["quantity"] == 4
        assert record["sku"] == "SKU-1"

    def test_context_fields_included(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        LogContext.set(correlation_id="abc-123", sale_id="sale-1")
        get_logger("test").info("test_msg")

        record = _parse_log(stream)
        assert record["correlation_id"] == "abc-123"
        assert record["sale_id"] == "sale-1"

    def test_kernel_exception_fields_extracted(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        try:
            raise InsufficientStockError("item-9", 2, 5)
        except InsufficientStockError:
            get_logger("test").error("checkout_failed", exc_info=True)

        record = _parse_log(stream)
        assert record["exc_type"] == "InsufficientStockError"
        assert record["exc_code"] == "INSUFFICIENT_STOCK"
        assert record["exc_item_id"] == "item-9"
        assert record["exc_available"] == 2
        assert record["exc_requested"] == 5
        assert "traceback" in record

    def test_uuid_and_decimal_serialized(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        uid = uuid4()
        get_logger("test").info("typed", extra={"payment_id": uid, "rate": Decimal("36.50")})

        record = _parse_log(stream)
        assert record["payment_id"] == str(uid)
        assert record["rate"] == "36.50"

    def test_money_and_enum_serialized(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info(
            "typed", extra={"balance": Money.of("12.30", "BS"), "status": PaymentStatus.PARTIAL}
        )

        record = _parse_log(stream)
        assert record["balance"] == {"amount": "12.30", "currency": "BS"}
        assert record["status"] == "PARTIAL"

    def test_level_filters_debug(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        logger.info("first")
        logger.warning("second", extra={"k": "v"})
        logger.debug("third")

        logs = _parse_all_logs(stream)
        assert [r["message"] for r in logs] == ["first", "second"]


# ---------------------------------------------------------------------------
# LogContext tests
# ---------------------------------------------------------------------------


class TestLogContext:
    def test_set_and_get(self):
        LogContext.set(correlation_id="x", item_id="y")
        assert LogContext.get_all() == {"correlation_id": "x", "item_id": "y"}

    def test_clear(self):
        LogContext.set(bundle_id="b")
        LogContext.clear()
        assert LogContext.get_all() == {}

    def test_bind_restores_previous(self):
        LogContext.set(sale_id="outer")
        with LogContext.bind(sale_id="inner"):
            assert LogContext.get_all()["sale_id"] == "inner"
        assert LogContext.get_all()["sale_id"] == "outer"

    def test_bind_restores_none(self):
        with LogContext.bind(bundle_id="temp"):
            assert LogContext.get_all()["bundle_id"] == "temp"
        assert "bundle_id" not in LogContext.get_all()

    def test_unknown_field_rejected(self):
        with pytest.raises(ValueError, match="actor_id"):
            LogContext.set(actor_id="clerk-1")
        with pytest.raises(ValueError, match="plan"):
            LogContext.bind(plan="p-1")
        assert LogContext.get_all() == {}


# ---------------------------------------------------------------------------
# configure_logging tests
# ---------------------------------------------------------------------------


@pytest.mark.usefixtures("_clean_logging")
class TestConfigureLogging:
    def test_idempotent(self):
        h1, _ = _make_handler()
        configure_logging(handler=h1)
        h2, _ = _make_handler()
        configure_logging(handler=h2)
        assert len(logging.getLogger("sales_kernel").handlers) == 1

    def test_get_logger_returns_child(self):
        assert get_logger("services.stock_ledger").name == "sales_kernel.services.stock_ledger"


# ---------------------------------------------------------------------------
# Events emitted by the engines
# ---------------------------------------------------------------------------


class TestEngineEvents:
    def test_stock_reserved_event(self, make_item, ledger_ops, captured_logs):
        item_id = make_item(initial_stock=10, sku="SKU-LOG")
        ledger_ops("reserve", item_id, 4, reference="cart-7")

        record = [r for r in captured_logs() if r["message"] == "stock_reserved"][0]
        assert record["item_id"] == str(item_id)
        assert record["sku"] == "SKU-LOG"
        assert record["quantity"] == 4
        assert record["reserved_stock"] == 4
        assert record["reference"] == "cart-7"

    def test_checkout_binds_sale_id(self, processor, make_item, captured_logs):
        item_id = make_item(initial_stock=5)

        sale = processor.create_direct_sale(TEST_CLIENT_ID, [CartLine(item_id, 2)], "CASH", "USD", "36.50")

        logs = captured_logs()
        consumed = [r for r in logs if r["message"] == "stock_consumed"][0]
        assert consumed["sale_id"] == str(sale.sale_id)
        created = [r for r in logs if r["message"] == "sale_created"][0]
        assert created["line_count"] == 1
        assert LogContext.get_all() == {}

    def test_payment_recorded_event(self, reconciliation, make_sale, captured_logs):
        sale = make_sale(total="100.00")

        reconciliation.record_payment(sale.sale_id, "1825.00", "BS", "36.50", "CASH")

        record = [r for r in captured_logs() if r["message"] == "payment_recorded"][0]
        assert record["sale_id"] == str(sale.sale_id)
        assert record["tendered_currency"] == "BS"
        assert record["credited"] == "50.00"
        assert record["remaining"] == "50.00"
        assert record["is_paid"] is False
