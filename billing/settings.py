from __future__ import annotations
import json
import logging
import os
from pathlib import Path
from typing import Dict, Optional

from pydantic import BaseModel, Field, ValidationError

from billing.models.invoice import INVOICE_PREFIXES

log = logging.getLogger(__name__)

# --- Chemins de base ---
ROOT_DIR = Path(__file__).resolve().parents[1]
DATA_DIR = ROOT_DIR / "data"
TEMPLATES_DIR = Path(__file__).resolve().parent / "templates" / "pdf"
EXPORTS_DIR = ROOT_DIR / "exports"

DEFAULT_EXCHANGE_RATES: Dict[str, float] = {
    "EUR": 3.4,
    "USD": 3.1,
    "GBP": 3.9,
    "CAD": 2.3,
    "CHF": 3.5,
    "AED": 0.84,
    "SAR": 0.83,
    "QAR": 0.85,
    "MAD": 0.31,
    "TRY": 0.09,
    "CNY": 0.43,
}


class CompanyInfo(BaseModel):
    name: str = "Ma Société"
    email: str = ""
    address: str = ""
    tax_id: str = ""


class Settings(BaseModel):
    """Contexte explicite de l'organisation, passé aux services."""
    organization_id: str = "default"
    language: str = "fr"
    invoice_prefix: Optional[str] = None  # None : préfixe selon la langue
    credit_note_prefix: str = "AV"
    base_currency: str = "TND"

    stamp_duty_enabled: bool = True
    stamp_duty_amount: float = 1.0
    withholding_threshold: float = 1000.0

    exchange_rates: Dict[str, float] = Field(default_factory=lambda: dict(DEFAULT_EXCHANGE_RATES))

    data_dir: Path = DATA_DIR
    exports_dir: Path = EXPORTS_DIR
    templates_dir: Path = TEMPLATES_DIR
    wkhtmltopdf_path: Optional[str] = None

    functions_url: Optional[str] = None
    api_key: Optional[str] = None
    ai_timeout: float = 30.0

    company: CompanyInfo = Field(default_factory=CompanyInfo)

    class Config:
        extra = "ignore"  # tolère d'anciennes clés dans settings.json

    @property
    def default_invoice_prefix(self) -> str:
        return self.invoice_prefix or INVOICE_PREFIXES.get(self.language, "FAC")

    def exchange_rate_for(self, currency: str) -> float:
        return self.exchange_rates.get(currency, 1.0)


def _load_json(path: os.PathLike | str):
    p = Path(path)
    if not p.exists():
        return None
    try:
        return json.loads(p.read_text(encoding="utf-8"))
    except json.JSONDecodeError:
        log.warning("settings file %s is not valid JSON, using defaults", p)
        return None


_ENV_KEYS = {
    "BILLING_DATA_DIR": "data_dir",
    "BILLING_FUNCTIONS_URL": "functions_url",
    "BILLING_API_KEY": "api_key",
    "BILLING_ORGANIZATION_ID": "organization_id",
    "WKHTMLTOPDF": "wkhtmltopdf_path",
}


def load_settings(path: Optional[os.PathLike | str] = None, env: Optional[Dict[str, str]] = None) -> Settings:
    """
    Charge la configuration :
    - data/settings.json (ou `path`)
    - variables d'environnement (prioritaires)
    """
    env = os.environ if env is None else env
    data_dir = Path(env.get("BILLING_DATA_DIR") or DATA_DIR)
    settings_path = Path(path) if path else data_dir / "settings.json"

    raw = _load_json(settings_path) or {}
    if not isinstance(raw, dict):
        raw = {}
    # compat : ancien format {"numbering": {"invoice_prefix": ...}}
    numbering = raw.get("numbering") if isinstance(raw.get("numbering"), dict) else {}
    if numbering.get("invoice_prefix") and "invoice_prefix" not in raw:
        raw["invoice_prefix"] = numbering["invoice_prefix"]

    for env_key, field in _ENV_KEYS.items():
        val = env.get(env_key)
        if val:
            raw[field] = val

    try:
        return Settings(**raw)
    except ValidationError as e:
        log.warning("invalid settings in %s (%s), using defaults", settings_path, e)
        return Settings()
