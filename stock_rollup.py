# stock_rollup.py
import logging
import os
import re
import threading
from enum import Enum
from typing import Dict, List, NamedTuple, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict

from stock_settings import RETENTION, WRITE_RETRIES

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Raised when an aggregate could not be written to its durable log."""


class Granularity(str, Enum):
    """
    The four fixed aggregation buckets, declared from finest to coarsest.
    Each member knows how many ticks separate two of its records (period), which
    granularity it is rolled up from (source, None for raw prices) and how many
    source values make up one record (window).
    """
    MINUTE = "MINUTE"
    FIFTEEN_MINUTES = "FIFTEEN_MINUTES"
    HOUR = "HOUR"
    DAY = "DAY"

    @property
    def period(self) -> int:
        return _PERIODS[self]

    @property
    def source(self) -> Optional["Granularity"]:
        return _SOURCES[self][0]

    @property
    def window(self) -> int:
        return _SOURCES[self][1]

    @classmethod
    def parse(cls, name: str) -> "Granularity":
        """Case-insensitive lookup, raises ValueError for unknown names."""
        return cls(name.strip().upper())


_PERIODS = {
    Granularity.MINUTE: 60,
    Granularity.FIFTEEN_MINUTES: 15 * 60,
    Granularity.HOUR: 60 * 60,
    Granularity.DAY: 24 * 60 * 60,
}

_SOURCES = {
    Granularity.MINUTE: (None, 60),
    Granularity.FIFTEEN_MINUTES: (Granularity.MINUTE, 15),
    Granularity.HOUR: (Granularity.FIFTEEN_MINUTES, 4),
    Granularity.DAY: (Granularity.HOUR, 24),
}


class PriceSample(NamedTuple):
    timestamp: int
    price: float


class PriceSeries:
    """
    Append-only sequence of price samples for one instrument.

    :param samples (list): PriceSample objects in the order they were appended (timestamp order).
    :param lock Lock: guards samples so a last_n read never races the scheduler's append.
    """
    def __init__(self):
        self.samples: List[PriceSample] = []
        self.lock = threading.Lock()

    def __len__(self) -> int:
        return len(self.samples)

    def append(self, sample: PriceSample):
        with self.lock:
            self.samples.append(sample)

    def last_n(self, count: int) -> List[PriceSample]:
        """
        Returns the most recent `count` samples, oldest first. When fewer samples exist we
        simply return all of them.
        """
        if count <= 0:
            return []
        with self.lock:
            return self.samples[-count:]


class AggregateRecord(BaseModel):
    """
    One rolled-up (average, max, min) triple for a single granularity.

    :param granularity (Granularity): bucket size this record summarises.
    :param average (float): arithmetic mean of the input window.
    :param max (float): largest value of the input window.
    :param min (float): smallest value of the input window.
    :param sequence (int): per-ticker arrival position, increasing within every partition.
    """
    model_config = ConfigDict(frozen=True)

    granularity: Granularity
    average: float
    max: float
    min: float
    sequence: int


_LINE = re.compile(
    r"^(?P<granularity>[A-Z_]+): Average=(?P<average>[^,]*), Max=(?P<max>[^,]*), Min=(?P<min>.*)$"
)


def format_line(record: AggregateRecord) -> str:
    return (
        f"{record.granularity.value}: Average={record.average!r}, "
        f"Max={record.max!r}, Min={record.min!r}"
    )


def parse_line(line: str, sequence: int) -> Optional[AggregateRecord]:
    """Parses one log line, returning None for anything that is not a valid aggregate."""
    match = _LINE.match(line.strip())
    if match is None:
        return None
    try:
        return AggregateRecord(
            granularity=Granularity(match.group("granularity")),
            average=float(match.group("average")),
            max=float(match.group("max")),
            min=float(match.group("min")),
            sequence=sequence,
        )
    except ValueError:
        return None


class AggregateStore:
    """
    Append-only record log partitioned by (ticker, granularity), mirrored to one text file
    per ticker. The in-memory partitions are the source of truth for reads; the files let
    a restarted process pick up where the previous one stopped.

    :param data_dir (str): folder holding the <TICKER>.txt logs, None keeps everything in memory.
    :param write_retries (int): attempts made for each append before giving up with StorageError.
    :param partitions (dict): maps (ticker, Granularity) to its records, oldest first.
    :param lock Lock: a single lock for every partition and file write, so the file line order
    always matches the sequence numbers.
    """
    def __init__(self, data_dir: Optional[str] = None, write_retries: int = WRITE_RETRIES):
        self.data_dir = data_dir
        self.write_retries = max(1, write_retries)
        self.partitions: Dict[Tuple[str, Granularity], List[AggregateRecord]] = {}
        self._sequence: Dict[str, int] = {}
        self.lock = threading.Lock()
        if data_dir is not None:
            os.makedirs(data_dir, exist_ok=True)

    def path_for(self, ticker: str) -> str:
        return os.path.join(self.data_dir, f"{ticker}.txt")

    def load(self, ticker: str) -> int:
        """
        We read the ticker's existing log (creating an empty one if missing) into memory and
        return how many records were recovered. Lines that do not parse are skipped.
        """
        if self.data_dir is None:
            return 0
        path = self.path_for(ticker)
        if not os.path.exists(path):
            open(path, "a", encoding="utf-8").close()
            return 0

        loaded = 0
        with self.lock:
            for granularity in Granularity:
                self.partitions.pop((ticker, granularity), None)
            with open(path, encoding="utf-8", errors="replace") as fh:
                for line in fh:
                    record = parse_line(line, loaded)
                    if record is None:
                        continue
                    self.partitions.setdefault((ticker, record.granularity), []).append(record)
                    loaded += 1
            self._sequence[ticker] = loaded
        logger.info("Loaded %d aggregate records for %s from %s", loaded, ticker, path)
        return loaded

    def append(
        self, ticker: str, granularity: Granularity, average: float, max_price: float, min_price: float
    ) -> AggregateRecord:
        with self.lock:
            record = AggregateRecord(
                granularity=granularity,
                average=average,
                max=max_price,
                min=min_price,
                sequence=self._sequence.get(ticker, 0),
            )
            if self.data_dir is not None:
                self._write(ticker, format_line(record) + "\n")
            self._sequence[ticker] = record.sequence + 1
            self.partitions.setdefault((ticker, granularity), []).append(record)
        logger.debug("appending ticker: %s data: %s", ticker, format_line(record))
        return record

    def _write(self, ticker: str, text: str):
        path = self.path_for(ticker)
        for attempt in range(1, self.write_retries + 1):
            try:
                with open(path, "a", encoding="utf-8") as fh:
                    fh.write(text)
                return
            except OSError as exc:
                logger.warning(
                    "Append to %s failed (attempt %d/%d): %s", path, attempt, self.write_retries, exc
                )
        raise StorageError(f"could not append to {path} after {self.write_retries} attempts")

    def last_n(self, ticker: str, granularity: Granularity, count: int) -> List[AggregateRecord]:
        """Up to `count` most recent records, oldest first; empty for unknown partitions."""
        if count <= 0:
            return []
        with self.lock:
            return self.partitions.get((ticker, granularity), [])[-count:]

    def trim(self, ticker: str, granularity: Granularity, keep: int = RETENTION) -> int:
        with self.lock:
            removed = self._trim_partition((ticker, granularity), keep)
            if removed:
                self._rewrite(ticker)
        return removed

    def trim_all(self, keep: int = RETENTION) -> int:
        """Trims every partition to its `keep` newest records and rewrites the affected logs."""
        removed = 0
        with self.lock:
            changed = set()
            for key in list(self.partitions):
                dropped = self._trim_partition(key, keep)
                if dropped:
                    changed.add(key[0])
                    removed += dropped
            for ticker in sorted(changed):
                self._rewrite(ticker)
        if removed:
            logger.info("Retention trimmed %d aggregate records (keep=%d)", removed, keep)
        return removed

    def _trim_partition(self, key: Tuple[str, Granularity], keep: int) -> int:
        records = self.partitions.get(key)
        if not records or len(records) <= keep:
            return 0
        excess = len(records) - max(0, keep)
        del records[:excess]
        return excess

    def _rewrite(self, ticker: str):
        # surviving records are written back in arrival order
        if self.data_dir is None:
            return
        records = [
            record
            for (owner, _), partition in self.partitions.items()
            if owner == ticker
            for record in partition
        ]
        records.sort(key=lambda record: record.sequence)
        path = self.path_for(ticker)
        tmp_path = path + ".tmp"
        try:
            with open(tmp_path, "w", encoding="utf-8") as fh:
                fh.writelines(format_line(record) + "\n" for record in records)
            os.replace(tmp_path, path)
        except OSError as exc:
            raise StorageError(f"could not rewrite {path}: {exc}") from exc


class Aggregator:
    """
    Computes the (average, max, min) record of one granularity. MINUTE reads raw prices
    from the instrument's PriceSeries, coarser granularities read the averages of the
    next-finer records already in the store.

    :param store (AggregateStore): where finer records are read from and new ones appended.
    :param hierarchical_extremes (bool): when True the coarser max/min are taken over the finer
    records' own max/min instead of over their averages.
    """
    def __init__(self, store: AggregateStore, hierarchical_extremes: bool = False):
        self.store = store
        self.hierarchical_extremes = hierarchical_extremes

    @staticmethod
    def aggregate(values: Sequence[float]) -> Tuple[float, float, float]:
        """
        Plain unweighted statistics. An empty window gives (0.0, 0.0, 0.0), so "no data"
        reads the same as a zero price.
        """
        if not values:
            return 0.0, 0.0, 0.0
        max_value, min_value = max(values), min(values)
        # rounding in sum/len can land one ulp outside [min, max]
        average = min(max(sum(values) / len(values), min_value), max_value)
        return average, max_value, min_value

    def compute(self, ticker: str, series: PriceSeries, granularity: Granularity) -> Tuple[float, float, float]:
        if granularity.source is None:
            return self.aggregate([sample.price for sample in series.last_n(granularity.window)])

        finer = self.store.last_n(ticker, granularity.source, granularity.window)
        average, max_price, min_price = self.aggregate([record.average for record in finer])
        if self.hierarchical_extremes and finer:
            max_price = max(record.max for record in finer)
            min_price = min(record.min for record in finer)
        return average, max_price, min_price

    def roll_up(self, ticker: str, series: PriceSeries, granularity: Granularity) -> AggregateRecord:
        average, max_price, min_price = self.compute(ticker, series, granularity)
        return self.store.append(ticker, granularity, average, max_price, min_price)
