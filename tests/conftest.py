"""
Fixtures communes : un DataStore JSON dans tmp_path, des services câblés
dessus, un client local et un produit avec stock.
"""
import pytest

from billing.models.client import Client
from billing.models.product import Product
from billing.services.catalog_service import CatalogService
from billing.services.client_service import ClientService
from billing.services.credit_note_service import CreditNoteService
from billing.services.invoice_service import InvoiceService
from billing.services.payment_service import PaymentService
from billing.settings import Settings
from billing.storage.repo import DataStore


@pytest.fixture
def settings(tmp_path):
    return Settings(data_dir=tmp_path / "data", exports_dir=tmp_path / "exports")


@pytest.fixture
def store(settings):
    return DataStore(settings.data_dir)


@pytest.fixture
def catalog(store):
    return CatalogService(store)


@pytest.fixture
def clients(store):
    return ClientService(store)


@pytest.fixture
def invoices(store, settings, catalog, clients):
    return InvoiceService(store, settings, catalog, clients)


@pytest.fixture
def payments(store, invoices):
    return PaymentService(store, invoices)


@pytest.fixture
def credit_notes(store, invoices):
    return CreditNoteService(store, invoices)


@pytest.fixture
def local_client(clients):
    return clients.add_client(Client(company_name="Sonolight SARL", client_type="company_local"))


@pytest.fixture
def foreign_client(clients):
    return clients.add_client(Client(company_name="Lumière SAS", client_type="foreign"))


@pytest.fixture
def product(catalog):
    return catalog.add_product(Product(name="Projecteur LED", reference="PRJ-01", price_ht=100.0,
                                       vat_rate=19, current_stock=5))
