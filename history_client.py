"""
history_client.py

Example console client. It assumes the stock API (stock_api.py) is running locally at
http://127.0.0.1:8000 and:
1. Looks up the tickers of every group in GROUPS via `/group/tickers/{group}`.
2. Every few seconds fetches the latest aggregates of each ticker via
   `/stock/{ticker}/{interval}/{count}` for every granularity.
3. Prints the responses so you can watch the minute, quarter, hour and day roll-ups fill in.
"""

import time
from typing import Dict, List

import requests

import stock_settings

BASE_URL = f"http://{stock_settings.HOST}:{stock_settings.PORT}"

GROUPS = ["C25", "S&P500"]
GRANULARITIES = ["MINUTE", "FIFTEEN_MINUTES", "HOUR", "DAY"]


def fetch_group(session, base_url: str, group: str) -> List[str]:
    r = session.get(f"{base_url}/group/tickers/{group}", timeout=1.0)
    r.raise_for_status()
    return r.json()


def fetch_history(session, base_url: str, ticker: str, granularity: str, count: int) -> List[Dict[str, float]]:
    """
    `session` is anything with a requests-style get(): a requests.Session, the requests
    module itself, or a test client.
    """
    r = session.get(f"{base_url}/stock/{ticker}/{granularity}/{count}", timeout=1.0)
    r.raise_for_status()
    return r.json()


def format_aggregate(ticker: str, granularity: str, point: Dict[str, float]) -> str:
    return (
        f"[{ticker} {granularity}] "
        f"avg={point['average']:.4f}  min={point['min']:.4f}  max={point['max']:.4f}"
    )


def poll_history_forever(session, base_url: str = BASE_URL, count: int = 1, interval: float = 2.0):
    tickers: List[str] = []
    while not tickers:
        for group in GROUPS:
            try:
                tickers.extend(t for t in fetch_group(session, base_url, group) if t not in tickers)
            except requests.RequestException as e:
                print(f"→ [Group {group}] Request error: {e}")
        if not tickers:
            time.sleep(interval)

    while True:
        for ticker in tickers:
            for granularity in GRANULARITIES:
                try:
                    points = fetch_history(session, base_url, ticker, granularity, count)
                except requests.RequestException as e:
                    print(f"   [{ticker} {granularity}] Request error: {e}")
                    continue
                for point in points:
                    print(format_aggregate(ticker, granularity, point))
        time.sleep(interval)


def main():
    print(f"History client polling {BASE_URL}.\nPress Ctrl+C to quit.\n")
    try:
        with requests.Session() as session:
            poll_history_forever(session)
    except KeyboardInterrupt:
        print("\nShutting down history client.")


if __name__ == "__main__":
    main()
