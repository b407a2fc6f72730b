"""
Unit tests for cancelled-order fill extraction and replacement chains.
"""
from decimal import Decimal

from brokersync.domain.models import OrderStatus
from brokersync.reconciliation.fill_extractor import (
    ReplacementChainIndex,
    extract_cancelled_fills,
    validate_extraction,
)


def _cancelled(make_op, **overrides):
    fields = dict(
        status=OrderStatus.CANCELLED,
        quantity=Decimal("20"),
        price=Decimal("40"),
        cumulative_qty=Decimal("15"),
        average_price=Decimal("38.43"),
        text="Cancelled by user",
    )
    fields.update(overrides)
    return make_op(**fields)


class TestExtraction:
    def test_cancelled_with_fill_becomes_filled(self, make_op):
        op = _cancelled(make_op, operation_id="E1")

        result = extract_cancelled_fills([op])

        assert result.extracted_count == 1
        assert result.skipped_count == 0
        assert len(result.operations) == 1
        filled = result.operations[0]
        assert filled.status == OrderStatus.FILLED
        assert filled.quantity == Decimal("15")
        assert filled.price == Decimal("38.43")
        assert filled.leaves_qty == Decimal("0")
        assert filled.extracted_from_cancelled is True
        assert filled.original_status == OrderStatus.CANCELLED
        assert filled.original_text == "Cancelled by user"
        assert filled.operation_id == "E1_FILLED"
        assert filled.id != op.id
        assert filled.is_final()

    def test_falls_back_to_price_without_average(self, make_op):
        op = _cancelled(make_op, average_price=Decimal("0"))
        result = extract_cancelled_fills([op])
        assert result.operations[0].price == Decimal("40")

    def test_cancelled_without_fill_dropped(self, make_op):
        op = _cancelled(make_op, cumulative_qty=Decimal("0"))
        result = extract_cancelled_fills([op])
        assert result.operations == []
        assert result.extracted_count == 0
        assert result.skipped_count == 0

    def test_other_operations_pass_through_in_order(self, make_op):
        a = make_op(price=Decimal("1"))
        b = make_op(status=OrderStatus.REJECTED, price=Decimal("2"))
        c = make_op(price=Decimal("3"))
        result = extract_cancelled_fills([a, b, c])
        assert result.operations == [a, b, c]

    def test_empty_batch(self):
        result = extract_cancelled_fills([])
        assert result.operations == []
        assert result.extracted_count == 0

    def test_metadata_records_audit(self, make_op):
        op = _cancelled(make_op, order_id="O77", client_order_id="C77")
        result = extract_cancelled_fills([op])
        record = result.metadata[0]
        assert record.order_id == "O77"
        assert record.quantity == Decimal("15")
        assert record.price == Decimal("38.43")
        assert record.value == Decimal("15") * Decimal("38.43")
        assert record.was_replaced is False
        assert record.terminal_client_order_id == "C77"


class TestReplacementChains:
    def test_marked_replaced_is_skipped(self, make_op):
        op = _cancelled(make_op, text="REPLACED")
        result = extract_cancelled_fills([op])
        assert result.extracted_count == 0
        assert result.skipped_count == 1
        assert result.operations == []

    def test_spanish_marker_case_insensitive(self, make_op):
        op = _cancelled(make_op, text="orden reemplazada")
        result = extract_cancelled_fills([op])
        assert result.skipped_count == 1

    def test_marked_replaced_without_successor_is_reported(self, make_op):
        op = _cancelled(make_op, client_order_id="C1", text="REPLACED")
        result = extract_cancelled_fills([op])
        assert result.unresolved_replacements == [op]
        validation = validate_extraction(result)
        assert validation.is_valid
        assert len(validation.warnings) == 1

    def test_marked_replaced_with_successor_is_not_unresolved(self, make_op):
        original = _cancelled(make_op, client_order_id="C1", text="REPLACED")
        successor = make_op(client_order_id="C2", original_client_order_id="C1", quantity=Decimal("5"))
        result = extract_cancelled_fills([original, successor])
        assert result.unresolved_replacements == []
        assert result.operations == [successor]

    def test_successor_filled_skips_original(self, make_op):
        original = _cancelled(make_op, client_order_id="C1")
        successor = make_op(client_order_id="C2", original_client_order_id="C1", quantity=Decimal("20"))

        result = extract_cancelled_fills([original, successor])

        assert result.extracted_count == 0
        assert result.skipped_count == 1
        assert result.operations == [successor]

    def test_chain_of_cancellations_extracts_only_terminal(self, make_op):
        first = _cancelled(make_op, client_order_id="C1", cumulative_qty=Decimal("5"))
        second = _cancelled(
            make_op, client_order_id="C2", original_client_order_id="C1", cumulative_qty=Decimal("12")
        )
        third = _cancelled(
            make_op, client_order_id="C3", original_client_order_id="C2", cumulative_qty=Decimal("15")
        )

        result = extract_cancelled_fills([first, second, third])

        assert result.extracted_count == 1
        assert result.skipped_count == 2
        extracted = [op for op in result.operations if op.extracted_from_cancelled]
        assert [op.quantity for op in extracted] == [Decimal("15")]
        assert result.metadata[0].terminal_client_order_id == "C3"
        max_cum = max(op.cumulative_qty for op in (first, second, third))
        assert sum(op.quantity for op in extracted) <= max_cum

    def test_successor_without_fills_lets_original_extract(self, make_op):
        original = _cancelled(make_op, client_order_id="C1")
        successor = make_op(
            client_order_id="C2",
            original_client_order_id="C1",
            status=OrderStatus.NEW,
            quantity=Decimal("5"),
        )
        result = extract_cancelled_fills([original, successor])
        assert result.extracted_count == 1
        assert result.metadata[0].was_replaced is True
        assert result.metadata[0].terminal_client_order_id == "C2"

    def test_precomputed_index_is_used(self, make_op):
        original = _cancelled(make_op, client_order_id="C1")
        successor = make_op(client_order_id="C2", original_client_order_id="C1")
        chains = ReplacementChainIndex([successor])

        result = extract_cancelled_fills([original], chains)

        assert len(chains) == 1
        assert result.skipped_count == 1

    def test_cyclic_chain_terminates(self, make_op):
        a = make_op(client_order_id="C1", original_client_order_id="C2")
        b = make_op(client_order_id="C2", original_client_order_id="C1")
        chains = ReplacementChainIndex([a, b])
        assert chains.terminal(a).client_order_id in ("C1", "C2")


class TestValidateExtraction:
    def test_totals(self, make_op):
        ops = [
            _cancelled(make_op, cumulative_qty=Decimal("2"), average_price=Decimal("10")),
            _cancelled(make_op, cumulative_qty=Decimal("3"), average_price=Decimal("20")),
        ]
        validation = validate_extraction(extract_cancelled_fills(ops))
        assert validation.is_valid
        assert validation.total_extracted == 2
        assert validation.total_value == Decimal("80")

    def test_zero_price_is_an_error(self, make_op):
        op = _cancelled(make_op, average_price=Decimal("0"), price=Decimal("0"))
        validation = validate_extraction(extract_cancelled_fills([op]))
        assert not validation.is_valid
        assert "invalid price" in validation.errors[0]
