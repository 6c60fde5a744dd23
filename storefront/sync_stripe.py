"""Make sure every catalog product has an active Stripe price.

    shop-sync-stripe --dry-run
    shop-sync-stripe --reference TSHIRT-BIO-2025
"""
from __future__ import annotations

import argparse
import logging
from typing import List, Optional

import stripe

from storefront.backend import HostedBackend
from storefront.catalog import Catalog
from storefront.errors import BackendError, PaymentError
from storefront.payments import Payments, StaticPriceCatalog
from storefront.session_guard import GuardedClient
from storefront.settings import Settings, configure_logging


log = logging.getLogger(__name__)


def main(argv: Optional[List[str]] = None, settings: Optional[Settings] = None, db: Optional[GuardedClient] = None) -> int:
    ap = argparse.ArgumentParser(prog="shop-sync-stripe")
    ap.add_argument("--dry-run", action="store_true", help="Only report what would change")
    ap.add_argument("--limit", type=int, default=0, help="Process at most N products (0 = all)")
    ap.add_argument("--reference", default="", help="Only this product reference")
    args = ap.parse_args(argv)

    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)
    stripe.api_key = settings.stripe_secret_key

    if db is None:
        if not settings.backend_configured:
            raise SystemExit("SUPABASE_URL and SUPABASE_ANON_KEY must be set")
        db = GuardedClient(HostedBackend(settings.backend_url, settings.backend_service_key or settings.backend_anon_key))

    payments = Payments(settings, db, StaticPriceCatalog.load(settings.stripe_products_path))
    catalog = Catalog(db, payments)

    products, source = catalog.list_products()
    if source != "backend":
        raise SystemExit("Could not load products from the database")

    if args.reference:
        products = [p for p in products if p.reference.lower() == args.reference.strip().lower()]
    if args.limit and args.limit > 0:
        products = products[: args.limit]

    synced = 0
    failed = 0
    for idx, p in enumerate(products, start=1):
        print(f"[{idx}/{len(products)}] {p.reference} {p.name}")
        if args.dry_run:
            print(f"  price: {p.stripe_price_id or '(none)'}")
            continue
        try:
            price_id = payments.ensure_active_price(p, create_missing=True)
            print(f"  OK: {price_id}")
            synced += 1
        except (PaymentError, BackendError) as e:
            print(f"  ERROR: {e.message}")
            failed += 1

    print("DONE")
    print(f"Products: {len(products)}")
    print(f"Synced: {synced}")
    print(f"Errors: {failed}")
    return 1 if failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
