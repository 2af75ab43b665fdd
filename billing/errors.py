from __future__ import annotations


class BillingError(Exception):
    """Erreur métier de base (facturation, avoirs, paiements)."""


class InvalidInput(BillingError, ValueError):
    """Saisie invalide : à corriger avant toute écriture."""


class StockExceeded(InvalidInput):
    def __init__(self, product_id: str, requested: float, allowed: float):
        self.product_id = product_id
        self.requested = requested
        self.allowed = allowed
        super().__init__(
            f"Quantity {requested:g} exceeds available stock for product {product_id} (max {allowed:g})"
        )


class ConfigurationLocked(BillingError):
    """Retenue / taux de change figés dès qu'un paiement existe."""


class NotFound(BillingError, KeyError):
    def __init__(self, entity: str, key: str):
        self.entity = entity
        self.key = key
        super().__init__(f"{entity} {key} not found")

    def __str__(self) -> str:
        return f"{self.entity} {self.key} not found"


class RemoteCallError(BillingError, RuntimeError):
    """Échec d'un appel distant (fonctions IA)."""
