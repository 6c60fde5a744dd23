from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass, field
from typing import Optional


PACKAGE_DIR = os.path.abspath(os.path.dirname(__file__))
BASE_DIR = os.path.dirname(PACKAGE_DIR)
DATA_DIR = os.path.join(PACKAGE_DIR, "data")

STRIPE_SECRET_KEY_DEFAULT = "sk_test_REPLACE_WITH_ENV_VARIABLE"
STRIPE_PUBLISHABLE_KEY_DEFAULT = "pk_test_REPLACE_WITH_ENV_VARIABLE"

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _load_dotenv(path: Optional[str] = None) -> None:
    """Best-effort .env loader.

    Only sets variables that are not already present in the environment.
    Supports simple KEY=VALUE lines (optionally quoted); ignores blanks and comments.
    """
    env_path = path or os.path.join(BASE_DIR, ".env")
    if not os.path.isfile(env_path):
        return
    with open(env_path, "r", encoding="utf-8") as f:
        for raw in f:
            line = raw.strip()
            if not line or line.startswith("#"):
                continue
            if "=" not in line:
                continue
            k, v = line.split("=", 1)
            k = k.strip()
            v = v.strip()
            if (v.startswith("'") and v.endswith("'")) or (v.startswith("\"") and v.endswith("\"")):
                v = v[1:-1]
            if not k:
                continue
            if k not in os.environ:
                os.environ[k] = v


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    secret_key: str = "dev-secret-change-me"

    # Hosted database (REST + auth endpoints)
    backend_url: str = ""
    backend_anon_key: str = ""
    backend_service_key: str = ""

    # Stripe
    stripe_secret_key: str = STRIPE_SECRET_KEY_DEFAULT
    stripe_publishable_key: str = STRIPE_PUBLISHABLE_KEY_DEFAULT
    stripe_webhook_secret: str = ""
    currency: str = "eur"
    shipping_rate_first: str = ""
    shipping_rate_free: str = ""
    shipping_price_first: float = 6.0
    free_shipping_window_hours: int = 24

    # Image hosting
    imgbb_api_key: str = ""
    imgbb_url: str = "https://api.imgbb.com/1/upload"

    cart_hold_minutes: int = 10
    session_refresh_margin: int = 600
    session_wait_timeout: float = 10.0

    log_level: str = "INFO"
    sample_products_path: str = field(default_factory=lambda: os.path.join(DATA_DIR, "sample_products.json"))
    stripe_products_path: str = field(default_factory=lambda: os.path.join(DATA_DIR, "stripe_products.json"))

    @property
    def backend_configured(self) -> bool:
        return bool(self.backend_url and self.backend_anon_key)

    @classmethod
    def from_env(cls, load_dotenv: bool = True) -> "Settings":
        if load_dotenv:
            _load_dotenv()
        defaults = cls()
        return cls(
            secret_key=os.getenv("SECRET_KEY", defaults.secret_key),
            backend_url=os.getenv("SUPABASE_URL", "").rstrip("/"),
            backend_anon_key=os.getenv("SUPABASE_ANON_KEY", ""),
            backend_service_key=os.getenv("SUPABASE_SERVICE_ROLE_KEY", ""),
            stripe_secret_key=os.getenv("STRIPE_SECRET_KEY", STRIPE_SECRET_KEY_DEFAULT),
            stripe_publishable_key=os.getenv("STRIPE_PUBLISHABLE_KEY", STRIPE_PUBLISHABLE_KEY_DEFAULT),
            stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET", ""),
            currency=os.getenv("SHOP_CURRENCY", defaults.currency).lower(),
            shipping_rate_first=os.getenv("STRIPE_SHIPPING_RATE_FIRST", ""),
            shipping_rate_free=os.getenv("STRIPE_SHIPPING_RATE_FREE", ""),
            shipping_price_first=_env_float("SHIPPING_PRICE_FIRST", defaults.shipping_price_first),
            free_shipping_window_hours=_env_int("FREE_SHIPPING_WINDOW_HOURS", defaults.free_shipping_window_hours),
            imgbb_api_key=os.getenv("IMGBB_API_KEY", ""),
            imgbb_url=os.getenv("IMGBB_URL", defaults.imgbb_url),
            cart_hold_minutes=_env_int("CART_HOLD_MINUTES", defaults.cart_hold_minutes),
            session_refresh_margin=_env_int("SESSION_REFRESH_MARGIN", defaults.session_refresh_margin),
            session_wait_timeout=_env_float("SESSION_WAIT_TIMEOUT", defaults.session_wait_timeout),
            log_level=os.getenv("LOG_LEVEL", defaults.log_level).upper(),
            sample_products_path=os.getenv("SAMPLE_PRODUCTS_PATH", defaults.sample_products_path),
            stripe_products_path=os.getenv("STRIPE_PRODUCTS_PATH", defaults.stripe_products_path),
        )


def configure_logging(level: str = "INFO") -> None:
    """Install one stream handler on the root logger (idempotent)."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    for h in root.handlers:
        if getattr(h, "_shop_handler", False):
            return
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler._shop_handler = True  # type: ignore[attr-defined]
    root.addHandler(handler)
