"""Runtime configuration constants, read once from the environment."""

import os

# Logging
LOG_LEVEL = os.getenv("NIBBLE_LOG_LEVEL", "INFO").upper()

# Server binding
API_HOST = os.getenv("NIBBLE_API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("NIBBLE_API_PORT", "8000"))

# HTTP calls made by connectors, judges, listeners and blob stores
HTTP_TIMEOUT_SECONDS = float(os.getenv("NIBBLE_HTTP_TIMEOUT", "30"))

# Listener polling and fan-out
ONCHAIN_POLL_SECONDS = float(os.getenv("NIBBLE_ONCHAIN_POLL_SECONDS", "10"))
WEBHOOK_POLL_SECONDS = float(os.getenv("NIBBLE_WEBHOOK_POLL_SECONDS", "5"))
LISTENER_CHANNEL_SIZE = int(os.getenv("NIBBLE_LISTENER_CHANNEL_SIZE", "64"))

# EIP-1559 defaults (wei / gas units)
GWEI = 1_000_000_000
DEFAULT_MAX_FEE_PER_GAS = int(os.getenv("NIBBLE_MAX_FEE_GWEI", "100")) * GWEI
DEFAULT_MAX_PRIORITY_FEE_PER_GAS = int(os.getenv("NIBBLE_PRIORITY_FEE_GWEI", "2")) * GWEI
DEFAULT_GAS_LIMIT = int(os.getenv("NIBBLE_GAS_LIMIT", "2000000"))
REGISTRY_GAS_LIMIT = int(os.getenv("NIBBLE_REGISTRY_GAS_LIMIT", "300000"))

# Operator identity; a throwaway key is generated when unset
OWNER_PRIVATE_KEY = os.getenv("NIBBLE_OWNER_PRIVATE_KEY", "")
NIBBLE_NAME = os.getenv("NIBBLE_NAME", "default")

# Content-addressed storage: memory | infura | pinata | custom
BLOB_PROVIDER = os.getenv("NIBBLE_BLOB_PROVIDER", "memory").lower()
INFURA_PROJECT_ID = os.getenv("INFURA_PROJECT_ID", "")
INFURA_PROJECT_SECRET = os.getenv("INFURA_PROJECT_SECRET", "")
PINATA_API_KEY = os.getenv("PINATA_API_KEY", "")
PINATA_SECRET_API_KEY = os.getenv("PINATA_SECRET_API_KEY", "")
CUSTOM_BLOB_URL = os.getenv("NIBBLE_CUSTOM_BLOB_URL", "")

# Finished runs kept for inspection before the oldest are dropped
MAX_RUNS = int(os.getenv("NIBBLE_MAX_RUNS", "1000"))
