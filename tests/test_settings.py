"""
Chargement de la configuration : fichier JSON + variables d'environnement.
"""
import json
from pathlib import Path

from billing.settings import Settings, load_settings


def test_defaults_without_file(tmp_path):
    s = load_settings(tmp_path / "missing.json", env={})
    assert s.invoice_prefix is None
    assert s.default_invoice_prefix == "FAC"
    assert s.stamp_duty_amount == 1.0
    assert s.withholding_threshold == 1000.0
    assert s.exchange_rate_for("EUR") > 0
    assert s.exchange_rate_for("XXX") == 1.0


def test_file_and_legacy_numbering(tmp_path):
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({"numbering": {"invoice_prefix": "INV"}, "stamp_duty_amount": 0.6,
                                "unknown_key": True}), encoding="utf-8")
    s = load_settings(path, env={})
    assert s.default_invoice_prefix == "INV"
    assert s.stamp_duty_amount == 0.6


def test_env_overrides(tmp_path):
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({"functions_url": "http://file"}), encoding="utf-8")
    s = load_settings(path, env={"BILLING_FUNCTIONS_URL": "http://env", "BILLING_API_KEY": "k",
                                 "BILLING_DATA_DIR": str(tmp_path), "WKHTMLTOPDF": "/usr/bin/wkhtmltopdf"})
    assert s.functions_url == "http://env"
    assert s.api_key == "k"
    assert s.data_dir == Path(tmp_path)
    assert s.wkhtmltopdf_path == "/usr/bin/wkhtmltopdf"


def test_settings_file_found_in_data_dir(tmp_path):
    (tmp_path / "settings.json").write_text(json.dumps({"organization_id": "org-42"}), encoding="utf-8")
    assert load_settings(env={"BILLING_DATA_DIR": str(tmp_path)}).organization_id == "org-42"


def test_invalid_values_fall_back_to_defaults(tmp_path):
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({"stamp_duty_amount": "beaucoup"}), encoding="utf-8")
    assert load_settings(path, env={}).stamp_duty_amount == 1.0

    path.write_text("{pas du json", encoding="utf-8")
    assert load_settings(path, env={}).default_invoice_prefix == "FAC"


def test_prefix_follows_language_unless_set():
    assert Settings(language="en").default_invoice_prefix == "INV"
    assert Settings(language="de").default_invoice_prefix == "FAC"
    assert Settings(language="en", invoice_prefix="FV").default_invoice_prefix == "FV"
