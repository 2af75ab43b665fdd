"""
Contraintes de stock sur les lignes de facture.

Un même produit peut apparaître sur plusieurs lignes : le plafond est global
au produit. En modification, le stock courant a déjà été décrémenté des
quantités d'origine, qu'on "rend" via `original_totals`.
"""
from __future__ import annotations

from typing import Dict, Iterable, List, Mapping, Optional

from billing.errors import StockExceeded
from billing.models.invoice import InvoiceLineForm, StockBubble


def totals_by_product(lines: Iterable) -> Dict[str, float]:
    totals: Dict[str, float] = {}
    for line in lines:
        totals[line.product_id] = totals.get(line.product_id, 0) + line.quantity
    return totals


def compute_max_quantity_by_index(
    lines: List[InvoiceLineForm],
    original_totals: Optional[Mapping[str, float]] = None,
) -> List[Optional[float]]:
    """None = quantité non bornée."""
    original_totals = original_totals or {}
    totals = totals_by_product(lines)
    # la première ligne d'un produit porte ses métadonnées
    meta: Dict[str, InvoiceLineForm] = {}
    for line in lines:
        meta.setdefault(line.product_id, line)

    out: List[Optional[float]] = []
    for line in lines:
        m = meta[line.product_id]
        if line.from_reservation and line.reservation_quantity:
            out.append(line.reservation_quantity)
            continue
        if m.unlimited_stock or m.allow_out_of_stock_sale or m.current_stock is None:
            out.append(None)
            continue

        available = m.current_stock - (m.reserved_stock or 0)
        cap_total = available + original_totals.get(line.product_id, 0)
        other_lines = totals[line.product_id] - line.quantity
        out.append(max(1, cap_total - other_lines))
    return out


def clamp_quantity_at_index(
    lines: List[InvoiceLineForm],
    index: int,
    original_totals: Optional[Mapping[str, float]] = None,
) -> List[InvoiceLineForm]:
    """Borne la quantité saisie sur une seule ligne dans [1, max]; les autres restent inchangées."""
    if index < 0 or index >= len(lines):
        return lines
    current = lines[index]
    # quantités de réservation figées
    if current.from_reservation:
        return lines
    limit = compute_max_quantity_by_index(lines, original_totals)[index]
    if limit is None:
        return lines

    clamped = min(max(1, current.quantity), limit)
    if clamped == current.quantity:
        return lines
    nxt = list(lines)
    nxt[index] = current.model_copy(update={"quantity": clamped})
    return nxt


def check_stock(
    lines: List[InvoiceLineForm],
    original_totals: Optional[Mapping[str, float]] = None,
) -> None:
    for line, limit in zip(lines, compute_max_quantity_by_index(lines, original_totals)):
        if limit is not None and line.quantity > limit:
            raise StockExceeded(line.product_id, line.quantity, limit)


def build_stock_bubbles(
    lines: Iterable[InvoiceLineForm],
    original_totals: Optional[Mapping[str, float]] = None,
) -> List[StockBubble]:
    original_totals = original_totals or {}
    bubbles: Dict[str, StockBubble] = {}

    for line in lines:
        b = bubbles.get(line.product_id)
        if b is None:
            stock = line.current_stock
            if stock is not None:
                stock += original_totals.get(line.product_id, 0)
            bubbles[line.product_id] = StockBubble(
                product_id=line.product_id,
                product_name=line.product_name,
                original_stock=stock,
                quantity_used=line.quantity,
                remaining_stock=None if line.unlimited_stock or stock is None else stock - line.quantity,
                unlimited_stock=line.unlimited_stock,
            )
            continue
        b.quantity_used += line.quantity
        if not b.unlimited_stock and b.original_stock is not None:
            b.remaining_stock = b.original_stock - b.quantity_used

    return list(bubbles.values())


def stock_differences(new_lines: Iterable, original_lines: Iterable) -> Dict[str, float]:
    """product_id -> (nouvelle qté - qté d'origine), différences nulles omises."""
    new_totals = totals_by_product(new_lines)
    old_totals = totals_by_product(original_lines)
    diffs: Dict[str, float] = {}
    for product_id in {*new_totals, *old_totals}:
        diff = new_totals.get(product_id, 0) - old_totals.get(product_id, 0)
        if diff != 0:
            diffs[product_id] = diff
    return diffs
