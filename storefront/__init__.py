"""Storefront service: catalog, cart, Stripe checkout and order back-office."""

__version__ = "0.1.0"
