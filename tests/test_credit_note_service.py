"""
Avoirs commerciaux de bout en bout : numérotation, avoirs successifs,
crédit financier versé sur le compte client.
"""
from datetime import date

import pytest

from billing.errors import InvalidInput
from billing.models.credit_note import LineDiscount
from billing.models.invoice import InvoiceDraft
from billing.models.payment import PaymentDraft
from billing.models.product import Product
from billing.services.credit_note_calc import credit_note_usage_status


@pytest.fixture
def invoice(invoices, catalog, local_client, product):
    draft = InvoiceDraft(client_id=local_client.id, client_type=local_client.client_type,
                         invoice_date=date(2024, 5, 10), lines=[catalog.line_from_product(product, 2)])
    return invoices.validate_invoice(invoices.create_invoice(draft).id)


def test_total_mode_credit_note(credit_notes, invoices, invoice):
    note = credit_notes.create_commercial_credit_note(invoice.id, "total", new_total_ht=100.0,
                                                      credit_note_date=date(2024, 6, 1))
    assert note.credit_note_number == "AV-2024-00001"
    assert note.total_ttc == pytest.approx(119)
    assert note.new_net_payable == pytest.approx(120)
    assert note.credited_amount == pytest.approx(119)
    assert note.financial_credit == 0

    inv = invoices.get_by_id(invoice.id)
    assert inv.total_credited == pytest.approx(119)
    assert inv.credit_note_count == 1
    # les lignes de facture ne bougent pas
    assert invoices.get_lines(invoice.id)[0].line_total_ht == pytest.approx(200)
    assert len(credit_notes.get_lines(note.id)) == 1


def test_successive_notes_never_double_credit(credit_notes, invoices, invoice):
    credit_notes.create_commercial_credit_note(invoice.id, "total", new_total_ht=100.0,
                                               credit_note_date=date(2024, 6, 1))
    ctx = credit_notes.load_context(invoice.id)
    assert ctx.operational_ht == pytest.approx(100)

    second = credit_notes.create_commercial_credit_note(invoice.id, "total", new_total_ht=50.0,
                                                        credit_note_date=date(2024, 6, 2))
    assert second.credit_note_number == "AV-2024-00002"
    assert second.credited_amount == pytest.approx(59.5)
    assert invoices.get_by_id(invoice.id).total_credited == pytest.approx(178.5)


def test_line_mode_credit_note(credit_notes, invoice, invoices):
    line_id = invoices.get_lines(invoice.id)[0].id
    note = credit_notes.create_commercial_credit_note(
        invoice.id, "lines", discounts=[LineDiscount(line_id=line_id, discount_ht=20.0)],
        reason="Geste commercial",
    )
    lines = credit_notes.get_lines(note.id)
    assert lines[0].discount_ht == pytest.approx(20)
    assert lines[0].discount_ttc == pytest.approx(23.8)
    assert note.subtotal_ht == pytest.approx(180)
    assert note.reason == "Geste commercial"


def test_empty_discount_refused(credit_notes, invoice, invoices):
    with pytest.raises(InvalidInput):
        credit_notes.create_commercial_credit_note(invoice.id, "lines")
    with pytest.raises(InvalidInput):
        credit_notes.create_commercial_credit_note(invoice.id, "total")
    assert invoices.get_by_id(invoice.id).credit_note_count == 0


def test_financial_credit_transferred_to_client(credit_notes, payments, clients, invoice, local_client):
    payments.record_payment(invoice.id, PaymentDraft(amount=239, method="cash"))
    note = credit_notes.create_commercial_credit_note(invoice.id, "total", new_total_ht=100.0)
    assert note.financial_credit == pytest.approx(119)
    assert note.credit_generated == pytest.approx(119)

    note = credit_notes.transfer_financial_credit(note.id)
    assert note.credit_transferred
    assert clients.get_by_id(local_client.id).account_balance == pytest.approx(119)
    assert clients.balance_buckets(local_client.id).credit_note == pytest.approx(119)

    with pytest.raises(InvalidInput):
        credit_notes.transfer_financial_credit(note.id)


def test_transfer_without_financial_credit_refused(credit_notes, invoice):
    note = credit_notes.create_commercial_credit_note(invoice.id, "total", new_total_ht=150.0)
    with pytest.raises(InvalidInput):
        credit_notes.transfer_financial_credit(note.id)


def test_render_credit_note_html(credit_notes, invoice):
    note = credit_notes.create_commercial_credit_note(invoice.id, "total", new_total_ht=100.0)
    html = credit_notes.render_credit_note_html(note)
    assert note.credit_note_number in html
    assert invoice.invoice_number in html


def test_credit_note_needs_validated_invoice(credit_notes, invoices, catalog, local_client, product):
    draft = InvoiceDraft(client_id=local_client.id, client_type=local_client.client_type,
                         invoice_date=date(2024, 5, 10), lines=[catalog.line_from_product(product, 1)])
    inv = invoices.create_invoice(draft)
    with pytest.raises(InvalidInput):
        credit_notes.create_commercial_credit_note(inv.id, "total", new_total_ht=50.0)
    assert credit_notes.list_for_invoice(inv.id) == []


def test_refund_is_capped_and_debits_client(credit_notes, payments, clients, invoice, local_client):
    payments.record_payment(invoice.id, PaymentDraft(amount=239, method="cash"))
    note = credit_notes.create_commercial_credit_note(invoice.id, "total", new_total_ht=100.0)
    with pytest.raises(InvalidInput):
        credit_notes.refund_credit(note.id, 10.0)

    note = credit_notes.transfer_financial_credit(note.id)
    assert credit_notes.max_refundable(note) == pytest.approx(119)
    with pytest.raises(InvalidInput):
        credit_notes.refund_credit(note.id, 120.0)
    with pytest.raises(InvalidInput):
        credit_notes.refund_credit(note.id, 10.0, method="swift_transfer")

    note = credit_notes.refund_credit(note.id, 50.0, method="check", reference_number="CHQ-9")
    assert note.credit_refunded == pytest.approx(50)
    assert credit_note_usage_status(note) == "partially_refunded"
    assert credit_notes.max_refundable(note) == pytest.approx(69)
    assert clients.get_by_id(local_client.id).account_balance == pytest.approx(69)

    refund = [m for m in clients.movements(local_client.id) if m.source_type == "refund"]
    assert refund[0].amount == pytest.approx(50)
    assert "CHQ-9" in refund[0].notes


def test_threshold_guard_built_from_settings(credit_notes, payments, invoices, catalog, local_client):
    console = catalog.add_product(Product(name="Console son", price_ht=1000.0, vat_rate=19, current_stock=2))
    draft = InvoiceDraft(client_id=local_client.id, client_type=local_client.client_type,
                         invoice_date=date(2024, 5, 10), lines=[catalog.line_from_product(console, 1)])
    inv = invoices.validate_invoice(invoices.create_invoice(draft).id)
    payments.configure_withholding(inv.id, 1.5)

    ctx = credit_notes.load_context(inv.id)
    guard = credit_notes.threshold_guard()
    assert guard.threshold == credit_notes.settings.withholding_threshold

    above, _ = credit_notes.preview(ctx, "total", new_total_ht=900.0)
    assert not credit_notes.needs_withholding_prompt(ctx, above, guard)
    below, _ = credit_notes.preview(ctx, "total", new_total_ht=500.0)
    assert credit_notes.needs_withholding_prompt(ctx, below, guard)
    assert not credit_notes.needs_withholding_prompt(ctx, below, guard)
