"""
Plafonds de quantité par produit, lignes de réservation, bulles de stock.
"""
import pytest

from billing.errors import StockExceeded
from billing.models.invoice import InvoiceLine, InvoiceLineForm
from billing.services.stock import (
    build_stock_bubbles, check_stock, clamp_quantity_at_index,
    compute_max_quantity_by_index, stock_differences,
)


def _line(product_id="X", qty=1, stock=5, **kw):
    return InvoiceLineForm(product_id=product_id, product_name=product_id, quantity=qty,
                           unit_price_ht=10, vat_rate=19, current_stock=stock, **kw)


def test_two_lines_same_product_share_the_cap():
    lines = [_line(qty=3), _line(qty=3)]
    assert compute_max_quantity_by_index(lines) == [2, 2]
    clamped = clamp_quantity_at_index(lines, 1)
    assert clamped[1].quantity == 2
    assert clamped[0].quantity == 3
    # l'entrée n'est pas modifiée
    assert lines[1].quantity == 3


def test_cap_is_at_least_one():
    lines = [_line(qty=5), _line(qty=1)]
    assert compute_max_quantity_by_index(lines)[1] == 1


def test_reserved_stock_reduces_cap():
    assert compute_max_quantity_by_index([_line(qty=1, reserved_stock=2)]) == [3]


def test_unbounded_products():
    lines = [
        _line("A", qty=50, unlimited_stock=True),
        _line("B", qty=50, allow_out_of_stock_sale=True),
        _line("C", qty=50, stock=None),
    ]
    assert compute_max_quantity_by_index(lines) == [None, None, None]
    assert clamp_quantity_at_index(lines, 0) is lines
    check_stock(lines)


def test_reservation_line_is_frozen():
    lines = [_line(qty=4, stock=1, from_reservation=True, reservation_id="r1", reservation_quantity=4)]
    assert compute_max_quantity_by_index(lines) == [4]
    assert clamp_quantity_at_index(lines, 0) is lines


def test_edit_mode_gives_back_original_quantities():
    # stock déjà décrémenté de 3 par la facture d'origine
    lines = [_line(qty=5, stock=2)]
    assert compute_max_quantity_by_index(lines, {"X": 3}) == [5]
    check_stock(lines, {"X": 3})
    with pytest.raises(StockExceeded):
        check_stock(lines)


def test_check_stock_reports_product():
    with pytest.raises(StockExceeded) as exc:
        check_stock([_line(qty=6)])
    assert exc.value.product_id == "X"
    assert exc.value.allowed == 5


def test_out_of_range_index_is_noop():
    lines = [_line(qty=9)]
    assert clamp_quantity_at_index(lines, 3) is lines


def test_stock_bubbles_aggregate_per_product():
    lines = [_line("X", qty=2), _line("Y", qty=1, stock=10), _line("X", qty=1)]
    bubbles = {b.product_id: b for b in build_stock_bubbles(lines)}
    assert bubbles["X"].quantity_used == 3
    assert bubbles["X"].remaining_stock == 2
    assert bubbles["Y"].remaining_stock == 9


def test_stock_bubbles_edit_mode_and_unlimited():
    lines = [_line("X", qty=4, stock=1), _line("U", qty=7, unlimited_stock=True)]
    bubbles = {b.product_id: b for b in build_stock_bubbles(lines, {"X": 3})}
    assert bubbles["X"].original_stock == 4
    assert bubbles["X"].remaining_stock == 0
    assert bubbles["U"].remaining_stock is None


def test_stock_differences():
    original = [InvoiceLine(invoice_id="i", product_id="X", quantity=3),
                InvoiceLine(invoice_id="i", product_id="Y", quantity=1)]
    new = [_line("X", qty=5), _line("Z", qty=2)]
    assert stock_differences(new, original) == {"X": 2, "Y": -1, "Z": 2}
    assert stock_differences(original, original) == {}


@pytest.mark.parametrize("stock,reserved,original,quantities", [
    (5, 0, {}, [4, 4, 4]),
    (2, 0, {"X": 3}, [4, 4]),
    (10, 3, {}, [5, 5, 5, 5]),
    (1, 0, {"X": 6}, [9, 1, 9]),
])
def test_sequential_clamps_stay_within_available(stock, reserved, original, quantities):
    lines = [_line(qty=q, stock=stock, reserved_stock=reserved) for q in quantities]
    for index in range(len(lines)):
        lines = clamp_quantity_at_index(lines, index, original)
    available = stock - reserved + original.get("X", 0)
    assert sum(l.quantity for l in lines) <= available
    assert all(l.quantity >= 1 for l in lines)
    check_stock(lines, original)
