# stock_market.py
import logging
import random
import threading
import time
from typing import Callable, Dict, Iterable, Iterator, List, Optional

from pydantic import BaseModel, Field

import stock_settings
from stock_rollup import (
    AggregateRecord,
    AggregateStore,
    Aggregator,
    Granularity,
    PriceSample,
    PriceSeries,
    StorageError,
)

logger = logging.getLogger(__name__)

PriceSource = Callable[[str], float]


class NotFoundError(LookupError):
    """Raised when a ticker or group is not part of the registry."""


class Instrument:
    """
    A simulated stock.

    :param ticker (str): unique ticker symbol (e.g., "AAPL").
    :param price (float): current price, moved by one delta every tick.
    :param nationality (str): country code of the listing.
    :param series (PriceSeries): every price the instrument has had since startup.
    """
    def __init__(self, ticker: str, price: float, nationality: str = ""):
        self.ticker = ticker
        self.price = float(price)
        self.nationality = nationality
        self.series = PriceSeries()

    def step(self, delta: float, timestamp: int) -> float:
        self.price += delta
        self.series.append(PriceSample(timestamp, self.price))
        return self.price


class InstrumentConfig(BaseModel):
    ticker: str = Field(min_length=1)
    price: float
    nationality: str = ""


class RegistryConfig(BaseModel):
    """Shape of the optional JSON registry file: group name -> instruments, in order."""
    groups: Dict[str, List[InstrumentConfig]]


class InstrumentRegistry:
    """
    Owns the tracked instruments and the groups they are listed in. A ticker listed in
    several groups is one Instrument; the first definition wins.
    """
    def __init__(self):
        self.instruments: Dict[str, Instrument] = {}
        self.groups: Dict[str, List[str]] = {}

    def __iter__(self) -> Iterator[Instrument]:
        return iter(list(self.instruments.values()))

    def __len__(self) -> int:
        return len(self.instruments)

    def register(self, group: str, instrument: Instrument) -> Instrument:
        instrument = self.instruments.setdefault(instrument.ticker, instrument)
        tickers = self.groups.setdefault(group, [])
        if instrument.ticker not in tickers:
            tickers.append(instrument.ticker)
        return instrument

    def lookup(self, ticker: str) -> Instrument:
        instrument = self.instruments.get(ticker)
        if instrument is None:
            raise NotFoundError(f"Stock not found: {ticker}")
        return instrument

    def tickers_by_group(self, group: str) -> List[str]:
        tickers = self.groups.get(group)
        if tickers is None:
            raise NotFoundError(f"Stock group not found: {group}")
        return list(tickers)

    def nationalities(self, tickers: Iterable[str]) -> Dict[str, str]:
        return {ticker: self.lookup(ticker).nationality for ticker in tickers}

    def search(self, query: str) -> List[str]:
        needle = query.strip().upper()
        return [ticker for ticker in self.instruments if needle in ticker.upper()]

    @classmethod
    def from_config(cls, config: RegistryConfig) -> "InstrumentRegistry":
        registry = cls()
        for group, instruments in config.groups.items():
            if not instruments:
                registry.groups.setdefault(group, [])
            for item in instruments:
                registry.register(group, Instrument(item.ticker, item.price, item.nationality))
        return registry


DEFAULT_REGISTRY = RegistryConfig(
    groups={
        "C25": [InstrumentConfig(ticker="NOVO", price=750.0, nationality="DK")],
        "S&P500": [InstrumentConfig(ticker="AAPL", price=150.0, nationality="US")],
    }
)


def load_registry(path: Optional[str] = None) -> InstrumentRegistry:
    """Builds the registry from a JSON file, or from DEFAULT_REGISTRY when no path is given."""
    if path is None:
        return InstrumentRegistry.from_config(DEFAULT_REGISTRY)
    with open(path, encoding="utf-8") as fh:
        config = RegistryConfig.model_validate_json(fh.read())
    logger.info("Loaded %d groups from %s", len(config.groups), path)
    return InstrumentRegistry.from_config(config)


class RandomWalk:
    """Uniform random price deltas in [-step/2, step/2)."""

    def __init__(self, step: float = stock_settings.PRICE_STEP, seed: Optional[int] = None):
        self.step = step
        self._rng = random.Random(seed)

    def __call__(self, ticker: str) -> float:
        return (self._rng.random() - 0.5) * self.step


class RollupScheduler:
    """
    Drives the simulation one tick (one simulated second) at a time. Which granularities
    are rolled up on a tick depends only on the tick counter, never on the wall clock, so
    replaying the same price deltas reproduces the same records.

    :param registry (InstrumentRegistry): instruments stepped and rolled up every tick.
    :param store (AggregateStore): destination of every aggregate record.
    :param price_source (callable): returns the next price delta for a ticker.
    :param interval (float): wall-clock seconds between two ticks when running in the background.
    :param retention (int): records kept per partition by the daily trim.
    :param tick_count (int): ticks processed so far, 1 on the first tick.
    :param lock Lock: serializes tick(), so two ticks never overlap.
    """
    def __init__(
        self,
        registry: InstrumentRegistry,
        store: AggregateStore,
        price_source: PriceSource,
        interval: float = stock_settings.TICK_INTERVAL,
        retention: int = stock_settings.RETENTION,
        hierarchical_extremes: bool = stock_settings.HIERARCHICAL_EXTREMES,
    ):
        self.registry = registry
        self.store = store
        self.price_source = price_source
        self.interval = interval
        self.retention = retention
        self.aggregator = Aggregator(store, hierarchical_extremes=hierarchical_extremes)
        self.tick_count = 0
        self.lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @staticmethod
    def due_granularities(tick: int) -> List[Granularity]:
        """Granularities due on the given tick, finest first."""
        if tick <= 0:
            return []
        return [granularity for granularity in Granularity if tick % granularity.period == 0]

    def tick(self) -> List[Granularity]:
        with self.lock:
            self.tick_count += 1
            now = self.tick_count
            instruments = list(self.registry)
            for instrument in instruments:
                instrument.step(self.price_source(instrument.ticker), now)

            due = self.due_granularities(now)
            for granularity in due:
                for instrument in instruments:
                    self._roll_up(instrument, granularity)

            if Granularity.DAY in due:
                try:
                    self.store.trim_all(self.retention)
                except StorageError:
                    logger.exception("Retention trim failed at tick %d", now)
            return due

    def _roll_up(self, instrument: Instrument, granularity: Granularity) -> Optional[AggregateRecord]:
        try:
            return self.aggregator.roll_up(instrument.ticker, instrument.series, granularity)
        except StorageError as exc:
            logger.error(
                "Dropped %s aggregate for %s at tick %d: %s",
                granularity.value, instrument.ticker, self.tick_count, exc,
            )
            return None

    def run(self, ticks: int) -> None:
        """Processes `ticks` ticks back to back, without waiting between them."""
        for _ in range(ticks):
            self.tick()

    def run_forever(self):
        """
        Fixed-rate loop: ticks are spaced `interval` seconds apart from the previous
        scheduled start. When a tick overruns we restart the schedule instead of firing a
        burst of ticks to catch up.
        """
        next_run = time.monotonic()
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("Tick %d failed", self.tick_count)
            next_run += self.interval
            delay = next_run - time.monotonic()
            if delay > 0:
                self._stop.wait(delay)
            else:
                next_run = time.monotonic()

    def start(self):
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self.run_forever, name="rollup-scheduler", daemon=True)
        self._thread.start()
        logger.info(
            "Scheduler started for %d instruments (interval=%.3fs)", len(self.registry), self.interval
        )

    def stop(self, timeout: Optional[float] = 5.0):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Scheduler stopped after %d ticks", self.tick_count)


class StockService:
    """
    The query surface used by the HTTP layer. Reads go straight to the registry and the
    store, so they can run while the scheduler is ticking.
    """
    def __init__(self, registry: InstrumentRegistry, store: AggregateStore, scheduler: RollupScheduler):
        self.registry = registry
        self.store = store
        self.scheduler = scheduler

    def get_historical_data(self, ticker: str, granularity: Granularity, count: int) -> List[AggregateRecord]:
        self.registry.lookup(ticker)
        return self.store.last_n(ticker, granularity, count)

    def get_tickers_by_group(self, group: str) -> List[str]:
        return self.registry.tickers_by_group(group)

    def get_nationalities(self, tickers: Iterable[str]) -> Dict[str, str]:
        return self.registry.nationalities(tickers)

    def search_tickers(self, query: str) -> List[str]:
        return self.registry.search(query)


def build_service(
    data_dir: Optional[str] = stock_settings.DATA_DIR,
    registry_file: Optional[str] = stock_settings.REGISTRY_FILE,
    price_source: Optional[PriceSource] = None,
) -> StockService:
    """Wires registry, store and scheduler from the settings, recovering existing logs."""
    registry = load_registry(registry_file)
    store = AggregateStore(data_dir)
    for instrument in registry:
        store.load(instrument.ticker)
    scheduler = RollupScheduler(registry, store, price_source or RandomWalk())
    return StockService(registry, store, scheduler)
