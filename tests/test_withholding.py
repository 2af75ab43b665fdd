"""
Retenue à la source, taux de change et statut de paiement.
"""
import pytest

from billing.errors import ConfigurationLocked, InvalidInput
from billing.models.invoice import Invoice
from billing.services.withholding import (
    adjusted_net_payable, apply_exchange_rate, apply_withholding,
    payment_status_for, remaining_balance, to_base_currency,
)


def _invoice(**kw):
    data = dict(client_id="c1", invoice_number="FAC-2024-00001", subtotal_ht=200.0, total_vat=38.0,
                total_ttc=238.0, stamp_duty_enabled=True, stamp_duty_amount=1.0, net_payable=239.0)
    data.update(kw)
    return Invoice(**data)


def test_withholding_rate_applied():
    inv = apply_withholding(_invoice(), 1.5, has_payments=False)
    assert inv.withholding_amount == pytest.approx(3)
    assert inv.net_payable == pytest.approx(236)
    assert adjusted_net_payable(inv) == pytest.approx(236)


def test_zero_rate_restores_full_net():
    inv = apply_withholding(_invoice(), 1.5, has_payments=False)
    inv = apply_withholding(inv, 0, has_payments=False)
    assert inv.net_payable == pytest.approx(239)
    assert adjusted_net_payable(inv) == pytest.approx(239)


def test_withholding_includes_custom_taxes():
    inv = apply_withholding(_invoice(custom_taxes_total=2.5), 1, has_payments=False)
    assert inv.net_payable == pytest.approx(198 + 38 + 1 + 2.5)


def test_withholding_locked_once_paid():
    with pytest.raises(ConfigurationLocked):
        apply_withholding(_invoice(), 1.5, has_payments=True)


def test_withholding_refused_on_foreign_invoice():
    with pytest.raises(InvalidInput):
        apply_withholding(_invoice(client_type="foreign"), 1.5, has_payments=False)


def test_original_invoice_left_untouched():
    original = _invoice()
    apply_withholding(original, 1.5, has_payments=False)
    assert original.net_payable == pytest.approx(239)
    assert not original.withholding_applied


def test_exchange_rate_on_foreign_invoice():
    inv = _invoice(client_type="foreign", total_vat=0, total_ttc=200, net_payable=200)
    inv = apply_exchange_rate(inv, "EUR", 3.35, has_payments=False)
    assert inv.currency == "EUR"
    assert inv.net_payable == pytest.approx(200)
    assert adjusted_net_payable(inv) == pytest.approx(200)
    assert to_base_currency(100, inv) == pytest.approx(335)


def test_exchange_rate_rules():
    foreign = _invoice(client_type="foreign")
    with pytest.raises(InvalidInput):
        apply_exchange_rate(foreign, "EUR", 0, has_payments=False)
    with pytest.raises(ConfigurationLocked):
        apply_exchange_rate(foreign, "EUR", 3.3, has_payments=True)
    with pytest.raises(InvalidInput):
        apply_exchange_rate(_invoice(), "EUR", 3.3, has_payments=False)


def test_payment_status():
    assert payment_status_for(0, 239) == "unpaid"
    assert payment_status_for(100, 239) == "partial"
    assert payment_status_for(239, 239) == "paid"
    assert payment_status_for(300, 239) == "paid"


def test_remaining_balance_never_negative():
    assert remaining_balance(_invoice(paid_amount=100)) == pytest.approx(139)
    assert remaining_balance(_invoice(paid_amount=500)) == 0
