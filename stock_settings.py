"""
Configuration values.

- Storage: DATA_DIR, RETENTION, WRITE_RETRIES
- Simulation: TICK_INTERVAL, PRICE_STEP, HIERARCHICAL_EXTREMES, REGISTRY_FILE
- Server: HOST, PORT, LOG_LEVEL
"""

import os


def _flag(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on")


# Storage
DATA_DIR = os.environ.get("STOCK_DATA_DIR", "tickers")      # one log file per ticker
RETENTION = int(os.environ.get("STOCK_RETENTION", 300))       # records kept per (ticker, granularity)
WRITE_RETRIES = int(os.environ.get("STOCK_WRITE_RETRIES", 3))

# Simulation
TICK_INTERVAL = float(os.environ.get("STOCK_TICK_INTERVAL", 0.01))  # seconds per simulated second
PRICE_STEP = float(os.environ.get("STOCK_PRICE_STEP", 0.1))
HIERARCHICAL_EXTREMES = _flag("STOCK_HIERARCHICAL_EXTREMES")
REGISTRY_FILE = os.environ.get("STOCK_REGISTRY_FILE") or None

# Server
HOST = os.environ.get("STOCK_HOST", "127.0.0.1")
PORT = int(os.environ.get("STOCK_PORT", 8000))
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
