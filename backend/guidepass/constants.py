"""
Stable application constants.

Operational parameters that vary per environment (credit allotments, retry
budgets, product ids) live in config.py.
"""

API_TITLE = "Guidepass Billing API"
API_VERSION = "1.0.0"

# Credits charged for one narrated guide
CREDITS_PER_GUIDE = 1

# Header a client may send to make a usage call idempotent beyond attraction id
IDEMPOTENCY_KEY_HEADER = "Idempotency-Key"
