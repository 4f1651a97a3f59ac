"""
config.py — Environment Configuration for the Transaction Service

All settings are read once from environment variables at import time.
Collaborator adapters use these values as defaults; tests pass explicit
values to the constructors instead of patching the environment.
"""

import os

# Collaborator addresses (normally injected by the deployment)
STOCK_SERVICE_URL = os.environ.get("STOCK_SERVICE_URL", "http://stock_service:8002")
RABBITMQ_HOST = os.environ.get("RABBITMQ_HOST", "localhost")
RABBITMQ_USER = os.environ.get("RABBITMQ_USER", "pos")
RABBITMQ_PASSWORD = os.environ.get("RABBITMQ_PASSWORD", "pos")
INTENT_RETRY_QUEUE = os.environ.get("INTENT_RETRY_QUEUE", "stock.intents.retry")
INTENT_RETRY_MAX_ATTEMPTS = int(os.environ.get("INTENT_RETRY_MAX_ATTEMPTS", "5"))
INTENT_RETRY_BACKOFF_SECONDS = float(os.environ.get("INTENT_RETRY_BACKOFF_SECONDS", "2"))

# Business rules
PAYMENT_TOLERANCE = float(os.environ.get("PAYMENT_TOLERANCE", "0.1"))
STRICT_ORDER_TRANSITIONS = os.environ.get("STRICT_ORDER_TRANSITIONS", "false").lower() in ("1", "true", "yes")

# Logging
LOG_FILE = os.environ.get("LOG_FILE", "transaction_processing.log")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
