API_VERSION_HEADER = "X-Credit-Ledger-Version"

# Internal callers (the execution service) authenticate with a shared key
SERVICE_KEY_HEADER = "X-Ledger-Service-Key"

# JWT Configuration
JWT_ALGORITHM = "HS256"

# Stripe
STRIPE_SIGNATURE_HEADER = "stripe-signature"
IDEMPOTENCY_KEY_HEADER = "Idempotency-Key"

# Pagination
DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100
