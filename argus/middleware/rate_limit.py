"""
Argus Escrow — Rate Limiting Configuration
Uses slowapi to enforce per-IP rate limits.
Withdrawal requests get their own, much tighter tier.
"""
from slowapi import Limiter
from slowapi.util import get_remote_address

# ── Global rate limiter (keyed by client IP) ──
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=["60/minute"],          # Global: 60 req/min per IP
    storage_uri="memory://",               # In-memory store (production: use Redis)
)

# ── Rate limit strings for specific endpoint tiers ──
RATE_LIMIT_WITHDRAW = "5/minute"    # Each request moves money on chain
RATE_LIMIT_WRITE = "30/minute"      # Address registration, internal credits
RATE_LIMIT_READ = "120/minute"      # Balance, history, quotes
