from __future__ import annotations
import logging
from datetime import date
from typing import List, Optional

from billing.errors import InvalidInput, NotFound
from billing.models.client import Client, ClientAccountMovement, MovementSource
from billing.models.common import hydrate
from billing.services.payment_rules import BalanceBuckets, split_client_balance
from billing.storage.repo import DataStore

log = logging.getLogger(__name__)


class ClientService:
    def __init__(self, store: DataStore):
        self.store = store
        self.repo = store.table("clients")
        self.movements_repo = store.table("client_account_movements")

    def list_clients(self, organization_id: Optional[str] = None) -> List[Client]:
        items = self.repo.list_all()
        if organization_id:
            items = [d for d in items if d.get("organization_id") == organization_id]
        # On ignore les entrées invalides
        return hydrate(Client, items)

    def add_client(self, client: Client) -> Client:
        self.repo.add(client)
        return client

    def update_client(self, client: Client) -> Client:
        self.repo.update(client)
        return client

    def delete_client(self, client_id: str) -> None:
        self.repo.delete(client_id)

    def get_by_id(self, client_id: str) -> Client:
        row = self.repo.get_by_id(client_id)
        if row is None:
            raise NotFound("client", client_id)
        return Client(**row)

    # ----------- compte client ----------

    def movements(self, client_id: str) -> List[ClientAccountMovement]:
        return hydrate(ClientAccountMovement, self.movements_repo.find(lambda d: d.get("client_id") == client_id))

    def balance_buckets(self, client_id: str) -> BalanceBuckets:
        client = self.get_by_id(client_id)
        rows = self.movements_repo.find(lambda d: d.get("client_id") == client_id)
        return split_client_balance(client.account_balance, rows)

    def _move(self, client_id: str, movement_type: str, amount: float, source_type: MovementSource,
              source_id: Optional[str], notes: Optional[str], movement_date: Optional[date]) -> ClientAccountMovement:
        if amount <= 0:
            raise InvalidInput("account movement amount must be positive")
        client = self.get_by_id(client_id)
        sign = 1 if movement_type == "credit" else -1
        new_balance = client.account_balance + sign * amount
        if new_balance < -1e-6:
            raise InvalidInput(f"client balance {client.account_balance:.3f} cannot cover {amount:.3f}")

        mv = ClientAccountMovement(
            client_id=client_id,
            organization_id=client.organization_id,
            movement_type=movement_type,
            amount=amount,
            balance_after=new_balance,
            source_type=source_type,
            source_id=source_id,
            notes=notes,
            movement_date=movement_date or date.today(),
        )
        self.movements_repo.add(mv)
        client.account_balance = new_balance
        self.repo.update(client)
        log.info("client %s %s %.3f (%s) -> balance %.3f", client_id, movement_type, amount, source_type, new_balance)
        return mv

    def credit_account(self, client_id: str, amount: float, source_type: MovementSource = "direct_deposit",
                       source_id: Optional[str] = None, notes: Optional[str] = None,
                       movement_date: Optional[date] = None) -> ClientAccountMovement:
        return self._move(client_id, "credit", amount, source_type, source_id, notes, movement_date)

    def debit_account(self, client_id: str, amount: float, source_type: MovementSource,
                      source_id: Optional[str] = None, notes: Optional[str] = None,
                      movement_date: Optional[date] = None) -> ClientAccountMovement:
        return self._move(client_id, "debit", amount, source_type, source_id, notes, movement_date)

    def deposit(self, client_id: str, amount: float, notes: Optional[str] = None) -> ClientAccountMovement:
        with self.store.transaction("clients", "client_account_movements"):
            return self.credit_account(client_id, amount, "direct_deposit", notes=notes)
