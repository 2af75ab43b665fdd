from __future__ import annotations

import logging
from typing import Dict, List, Optional

from billing.errors import InvalidInput, NotFound
from billing.models.common import hydrate
from billing.models.invoice import InvoiceLineForm
from billing.models.product import Product, Reservation, StockMovement
from billing.storage.repo import DataStore

log = logging.getLogger(__name__)


# ----------------- Service Catalogue ----------------- #

class CatalogService:
    """
    Produits, mouvements de stock et réservations.
    - Toute variation de stock laisse une trace dans stock_movements
    - Les produits à stock illimité ne bougent jamais
    """

    def __init__(self, store: DataStore) -> None:
        self.store = store
        self.products_repo = store.table("products")
        self.movements_repo = store.table("stock_movements")
        self.reservations_repo = store.table("product_reservations")

    # ---------- Produits ---------- #

    def list_products(self, organization_id: Optional[str] = None) -> List[Product]:
        rows = self.products_repo.list_all()
        if organization_id:
            rows = [r for r in rows if r.get("organization_id") == organization_id]
        return hydrate(Product, rows)

    def get_product(self, product_id: str) -> Product:
        row = self.products_repo.get_by_id(product_id)
        if row is None:
            raise NotFound("product", product_id)
        return Product(**row)

    def add_product(self, product: Product) -> Product:
        self.products_repo.add(product)
        return product

    def update_product(self, product: Product) -> Product:
        self.products_repo.update(product)
        return product

    def line_from_product(self, product: Product, quantity: float = 1, is_foreign: bool = False) -> InvoiceLineForm:
        return InvoiceLineForm(
            product_id=product.id,
            product_name=product.name,
            product_reference=product.reference,
            quantity=quantity,
            unit_price_ht=product.price_ht,
            vat_rate=0 if is_foreign else product.vat_rate,
            max_discount=product.max_discount or 100,
            current_stock=product.current_stock,
            reserved_stock=product.reserved_stock,
            unlimited_stock=product.unlimited_stock,
            allow_out_of_stock_sale=product.allow_out_of_stock_sale,
        )

    # ---------- Stock ---------- #

    def adjust_stock(self, product_id: str, delta: float, reason_detail: str,
                     reason_category: str = "commercial") -> Optional[StockMovement]:
        """delta < 0 : sortie de stock ; delta > 0 : retour en stock."""
        product = self.get_product(product_id)
        if product.unlimited_stock or delta == 0:
            return None

        previous = product.current_stock or 0
        new_stock = previous + delta
        movement = StockMovement(
            product_id=product_id,
            movement_type="add" if delta > 0 else "remove",
            quantity=abs(delta),
            previous_stock=previous,
            new_stock=new_stock,
            reason_category=reason_category,
            reason_detail=reason_detail,
        )
        self.movements_repo.add(movement)
        product.current_stock = new_stock
        self.products_repo.update(product)
        log.info("stock %s: %s -> %s (%s)", product_id, previous, new_stock, reason_detail)
        return movement

    def movements_for(self, product_id: str) -> List[StockMovement]:
        return hydrate(StockMovement, self.movements_repo.find(lambda d: d.get("product_id") == product_id))

    # ---------- Réservations ---------- #

    def add_reservation(self, reservation: Reservation) -> Reservation:
        product = self.get_product(reservation.product_id)
        if reservation.quantity <= 0:
            raise InvalidInput("reservation quantity must be positive")
        if not (product.unlimited_stock or product.allow_out_of_stock_sale):
            available = (product.current_stock or 0) - product.reserved_stock
            if reservation.quantity > available:
                raise InvalidInput(f"cannot reserve {reservation.quantity:g}, only {available:g} available")
        with self.store.transaction("product_reservations", "products"):
            self.reservations_repo.add(reservation)
            product.reserved_stock += reservation.quantity
            self.products_repo.update(product)
        return reservation

    def active_reservations(self, client_id: str) -> List[Reservation]:
        rows = self.reservations_repo.find(
            lambda d: d.get("client_id") == client_id and d.get("status") in ("active", "expired")
        )
        return hydrate(Reservation, rows)

    def reservation_lines(self, client_id: str, is_foreign: bool = False) -> List[InvoiceLineForm]:
        """Lignes de facture figées à partir des réservations du client."""
        lines = []
        for r in self.active_reservations(client_id):
            line = self.line_from_product(self.get_product(r.product_id), r.quantity, is_foreign)
            line.from_reservation = True
            line.reservation_id = r.id
            line.reservation_quantity = r.quantity
            lines.append(line)
        return lines

    def consume_reservation(self, reservation_id: str, product_id: str, quantity: float) -> None:
        row = self.reservations_repo.get_by_id(reservation_id)
        if row is None:
            log.warning("reservation %s vanished before invoicing", reservation_id)
            return
        remaining = float(row.get("quantity") or 0) - quantity
        if remaining <= 0:
            self.reservations_repo.update({"id": reservation_id, "status": "used", "quantity": 0})
        else:
            self.reservations_repo.update({"id": reservation_id, "quantity": remaining})

        product = self.get_product(product_id)
        product.reserved_stock = max(0, product.reserved_stock - quantity)
        self.products_repo.update(product)

    def stock_snapshot(self, product_ids) -> Dict[str, Optional[float]]:
        return {pid: self.get_product(pid).current_stock for pid in product_ids}
