import os
from typing import Optional

TESTING = os.getenv("TESTING") == "1"

RPC_URL = os.getenv("RPC_URL", "http://127.0.0.1:8545")
PRIVATE_KEY = os.getenv("PRIVATE_KEY", "")

HOST = os.getenv("HOST", "127.0.0.1")
PORT = int(os.getenv("PORT", "7788"))

# Interval jobs tick on wall-clock time, not on blocks.
POLL_SECONDS = float(os.getenv("POLL_SECONDS", "1.0"))
# How often the web3 client asks the node for new logs.
LOG_POLL_SECONDS = float(os.getenv("LOG_POLL_SECONDS", "1.0"))


def _optional_float(name: str) -> Optional[float]:
    raw = os.getenv(name)
    if not raw:
        return None
    return float(raw)


# Unset means wait for receipts indefinitely.
RECEIPT_TIMEOUT_SECONDS = _optional_float("RECEIPT_TIMEOUT_SECONDS")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_JSON = os.getenv("LOG_JSON") == "1"
