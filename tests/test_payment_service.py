"""
Encaissements : statut de paiement, verrouillage de la configuration,
paiement sur solde client, paiement mixte, suppression.
"""
from datetime import date

import pytest

from billing.errors import ConfigurationLocked, InvalidInput
from billing.models.invoice import InvoiceDraft
from billing.models.payment import MixedPaymentLine, PaymentDraft


@pytest.fixture
def invoice(invoices, catalog, local_client, product):
    draft = InvoiceDraft(client_id=local_client.id, client_type=local_client.client_type,
                         invoice_date=date(2024, 5, 10), lines=[catalog.line_from_product(product, 2)])
    return invoices.validate_invoice(invoices.create_invoice(draft).id)


def test_withholding_then_payments(payments, invoices, invoice):
    inv = payments.configure_withholding(invoice.id, 1.5)
    assert inv.net_payable == pytest.approx(236)
    assert invoices.get_by_id(invoice.id).withholding_applied

    payments.record_payment(invoice.id, PaymentDraft(amount=100, method="cash"))
    assert invoices.get_by_id(invoice.id).payment_status == "partial"

    with pytest.raises(ConfigurationLocked):
        payments.configure_withholding(invoice.id, 0)

    payments.record_payment(invoice.id, PaymentDraft(amount=136, method="check", reference_number="CHQ-7"))
    inv = invoices.get_by_id(invoice.id)
    assert inv.payment_status == "paid"
    assert inv.paid_amount == pytest.approx(236)
    assert [p.reference_number for p in payments.list_payments(invoice.id)] == [None, "CHQ-7"]


def test_overpayment_refused(payments, invoice):
    with pytest.raises(InvalidInput):
        payments.record_payment(invoice.id, PaymentDraft(amount=240, method="cash"))
    assert not payments.has_payments(invoice.id)


def test_delete_payment_recomputes_status(payments, invoices, invoice):
    p = payments.record_payment(invoice.id, PaymentDraft(amount=239, method="cash"))
    assert invoices.get_by_id(invoice.id).payment_status == "paid"
    inv = payments.delete_payment(p.id)
    assert inv.payment_status == "unpaid"
    assert inv.paid_amount == 0
    assert not payments.has_payments(invoice.id)


def test_deposit_payment_debits_client_account(payments, clients, invoices, invoice, local_client):
    clients.deposit(local_client.id, 50.0)
    payments.record_payment(invoice.id, PaymentDraft(amount=50, method="client_deposit"))

    assert clients.get_by_id(local_client.id).account_balance == pytest.approx(0)
    debit = [m for m in clients.movements(local_client.id) if m.movement_type == "debit"]
    assert debit[0].source_type == "deposit_payment"
    assert debit[0].source_id == invoice.id
    assert invoices.get_by_id(invoice.id).paid_amount == pytest.approx(50)


def test_deposit_payment_beyond_balance_refused(payments, clients, invoice, local_client):
    clients.deposit(local_client.id, 20.0)
    with pytest.raises(InvalidInput):
        payments.record_payment(invoice.id, PaymentDraft(amount=30, method="client_deposit"))
    assert clients.get_by_id(local_client.id).account_balance == pytest.approx(20)


def test_mixed_payment_reference(payments, invoice):
    lines = [MixedPaymentLine(method="cash", amount=39.0),
             MixedPaymentLine(method="iban_transfer", amount=200.0, reference_number="VIR-42")]
    p = payments.record_payment(invoice.id, PaymentDraft(amount=239, method="mixed", mixed_lines=lines))
    assert p.reference_number == "cash: 39.000 DT | iban_transfer: 200.000 DT (VIR-42)"


def test_foreign_payment_in_invoice_currency(payments, invoices, catalog, foreign_client, product):
    draft = InvoiceDraft(client_id=foreign_client.id, client_type="foreign", invoice_date=date(2024, 5, 10),
                         currency="EUR", exchange_rate=3.4,
                         lines=[catalog.line_from_product(product, 2, is_foreign=True)])
    inv = invoices.create_invoice(draft)
    invoices.validate_invoice(inv.id)
    payments.configure_currency(inv.id, "EUR", 3.3)

    p = payments.record_payment(inv.id, PaymentDraft(amount=200, method="swift_transfer",
                                                     reference_number="SW-1", exchange_rate=3.3))
    assert p.net_amount == pytest.approx(660)
    assert "1 EUR = 3.3 TND" in p.notes
    assert invoices.get_by_id(inv.id).payment_status == "paid"

    with pytest.raises(ConfigurationLocked):
        payments.configure_currency(inv.id, "USD", 3.1)


def test_payment_needs_validated_invoice(payments, invoices, catalog, local_client, product):
    draft = InvoiceDraft(client_id=local_client.id, client_type=local_client.client_type,
                         invoice_date=date(2024, 5, 10), lines=[catalog.line_from_product(product, 1)])
    inv = invoices.create_invoice(draft)
    with pytest.raises(InvalidInput):
        payments.record_payment(inv.id, PaymentDraft(amount=50, method="cash"))
    assert not payments.has_payments(inv.id)


def test_delete_deposit_payment_gives_balance_back(payments, clients, invoices, invoice, local_client):
    clients.deposit(local_client.id, 50.0)
    p = payments.record_payment(invoice.id, PaymentDraft(amount=50, method="client_deposit"))
    assert clients.get_by_id(local_client.id).account_balance == pytest.approx(0)

    payments.delete_payment(p.id)
    assert clients.get_by_id(local_client.id).account_balance == pytest.approx(50)
    assert clients.balance_buckets(local_client.id).deposit == pytest.approx(50)
    assert invoices.get_by_id(invoice.id).paid_amount == 0


def test_credit_note_payment_tracks_usage(payments, credit_notes, clients, invoices, catalog,
                                          invoice, local_client, product):
    payments.record_payment(invoice.id, PaymentDraft(amount=239, method="cash"))
    note = credit_notes.create_commercial_credit_note(invoice.id, "total", new_total_ht=100.0)
    credit_notes.transfer_financial_credit(note.id)

    draft = InvoiceDraft(client_id=local_client.id, client_type=local_client.client_type,
                         invoice_date=date(2024, 6, 1),
                         lines=[catalog.line_from_product(catalog.get_product(product.id), 1)])
    second = invoices.validate_invoice(invoices.create_invoice(draft).id)
    p = payments.record_payment(second.id, PaymentDraft(amount=100, method="client_credit_note"))

    used = credit_notes.get_by_id(note.id)
    assert used.credit_used == pytest.approx(100)
    assert used.credit_available == pytest.approx(19)
    assert clients.get_by_id(local_client.id).account_balance == pytest.approx(19)

    payments.delete_payment(p.id)
    assert credit_notes.get_by_id(note.id).credit_used == 0
    assert clients.get_by_id(local_client.id).account_balance == pytest.approx(119)


def test_currency_rate_defaults_to_settings(payments, invoices, catalog, foreign_client, product):
    draft = InvoiceDraft(client_id=foreign_client.id, client_type="foreign", invoice_date=date(2024, 5, 10),
                         currency="EUR", lines=[catalog.line_from_product(product, 1, is_foreign=True)])
    inv = invoices.create_invoice(draft)
    assert inv.exchange_rate == pytest.approx(3.4)

    inv = payments.configure_currency(inv.id, "USD")
    assert inv.currency == "USD"
    assert inv.exchange_rate == pytest.approx(3.1)
