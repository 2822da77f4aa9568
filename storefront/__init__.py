"""Storefront service: catalog, cart and transactional checkout."""
