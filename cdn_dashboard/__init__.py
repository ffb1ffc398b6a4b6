"""Aggregates Cloudflare and EdgeOne zone analytics into one dashboard snapshot."""

__version__ = "0.1.0"
