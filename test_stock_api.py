# test_stock_api.py
import time

from fastapi.testclient import TestClient
import pytest

import stock_api
from history_client import fetch_group, fetch_history, format_aggregate
from stock_api import create_app, parse_ticker_list
from stock_market import RandomWalk, RollupScheduler, StockService, load_registry
from stock_rollup import AggregateStore, Granularity


def make_service(interval=0.01):
    registry = load_registry()
    store = AggregateStore()
    scheduler = RollupScheduler(registry, store, RandomWalk(seed=1), interval=interval)
    return StockService(registry, store, scheduler)


service = make_service()
service.scheduler.run(180)
client = TestClient(create_app(service, run_scheduler=False))


def test_historical_data():
    r = client.get("/stock/AAPL/MINUTE/10")
    assert r.status_code == 200
    points = r.json()
    assert len(points) == 3
    for point in points:
        assert set(point) == {"average", "max", "min"}
        assert point["min"] <= point["average"] <= point["max"]

    # interval is case-insensitive and count caps the result
    r = client.get("/stock/NOVO/minute/2")
    assert r.status_code == 200
    assert len(r.json()) == 2


def test_historical_data_empty_partition():
    r = client.get("/stock/AAPL/DAY/10")
    assert r.status_code == 200
    assert r.json() == []

    r = client.get("/stock/AAPL/MINUTE/0")
    assert r.json() == []


def test_historical_data_unknown_ticker():
    r = client.get("/stock/UNKNOWN/MINUTE/10")
    assert r.status_code == 404


def test_historical_data_unknown_interval():
    r = client.get("/stock/AAPL/WEEK/10")
    assert r.status_code == 400


def test_group_tickers():
    r = client.get("/group/tickers/C25")
    assert r.status_code == 200
    assert r.json() == ["NOVO"]

    r = client.get("/group/tickers/NASDAQ")
    assert r.status_code == 404


def test_nationalities():
    r = client.get("/stock/nationalities/%5BAAPL,NOVO%5D")
    assert r.status_code == 200
    assert r.json() == {"AAPL": "US", "NOVO": "DK"}

    r = client.get("/stock/nationalities/AAPL,UNKNOWN")
    assert r.status_code == 404


def test_parse_ticker_list():
    assert parse_ticker_list("[AAPL,NOVO]") == ["AAPL", "NOVO"]
    assert parse_ticker_list("AAPL, NOVO") == ["AAPL", "NOVO"]
    assert parse_ticker_list("[]") == []


def test_search_stocks():
    r = client.get("/search/stocks/ov")
    assert r.status_code == 200
    assert r.json() == ["NOVO"]

    r = client.get("/search/stocks/zzz")
    assert r.json() == []


def test_lifespan_runs_scheduler():
    background = make_service(interval=0.001)
    with TestClient(create_app(background)) as c:
        deadline = time.monotonic() + 5.0
        while not background.store.last_n("AAPL", Granularity.MINUTE, 1) and time.monotonic() < deadline:
            time.sleep(0.01)
        r = c.get("/stock/AAPL/MINUTE/1")
        assert r.status_code == 200
        assert len(r.json()) == 1

    stopped_at = background.scheduler.tick_count
    time.sleep(0.05)
    assert background.scheduler.tick_count == stopped_at


def test_lifespan_builds_default_service(monkeypatch):
    built = make_service()
    monkeypatch.setattr(stock_api, "build_service", lambda: built)

    with TestClient(create_app(run_scheduler=False)) as c:
        r = c.get("/group/tickers/C25")
        assert r.status_code == 200
        assert r.json() == ["NOVO"]


def test_history_client_against_app():
    assert fetch_group(client, "http://testserver", "C25") == ["NOVO"]

    points = fetch_history(client, "http://testserver", "AAPL", "MINUTE", 2)
    assert len(points) == 2
    line = format_aggregate("AAPL", "MINUTE", points[-1])
    assert line.startswith("[AAPL MINUTE] avg=")


def test_concurrent_reads_while_ticking():
    import threading

    background = make_service()
    app_client = TestClient(create_app(background, run_scheduler=False))
    errors = []

    def read_many():
        for _ in range(50):
            r = app_client.get("/stock/AAPL/MINUTE/300")
            if r.status_code != 200:
                errors.append(r.status_code)

    threads = [threading.Thread(target=read_many) for _ in range(4)]
    for t in threads: t.start()
    background.scheduler.run(600)
    for t in threads: t.join()

    assert errors == []
    assert len(app_client.get("/stock/AAPL/MINUTE/300").json()) == 10


@pytest.mark.parametrize("interval", ["MINUTE", "FIFTEEN_MINUTES", "HOUR", "DAY"])
def test_every_interval_is_routable(interval):
    r = client.get(f"/stock/NOVO/{interval}/5")
    assert r.status_code == 200
