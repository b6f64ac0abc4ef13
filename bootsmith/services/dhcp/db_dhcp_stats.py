from dataclasses import dataclass
from functools import wraps
from logging import Logger
from pathlib import Path
from sqlite3 import Connection, Cursor, connect
from threading import RLock
from time import time


@dataclass(frozen=True)
class DHCPStatsSchema:
    name: str = "stats"
    counters: frozenset[str] = frozenset(
        {
            "received_total",
            "received_malformed",
            "received_discover",
            "received_request",
            "received_decline",
            "received_release",
            "received_other",
            "received_dropped",
            "sent_total",
            "sent_offer",
            "sent_ack",
            "sent_failed",
        }
    )
    schema: str = """
        CREATE TABLE IF NOT EXISTS stats (
            id INTEGER PRIMARY KEY CHECK (id = 1),
            start_time INTEGER NOT NULL DEFAULT (CAST(strftime('%s','now') AS INTEGER)),
            last_updated INTEGER DEFAULT 0,
            received_total INTEGER DEFAULT 0,
            received_malformed INTEGER DEFAULT 0,
            received_discover INTEGER DEFAULT 0,
            received_request INTEGER DEFAULT 0,
            received_decline INTEGER DEFAULT 0,
            received_release INTEGER DEFAULT 0,
            received_other INTEGER DEFAULT 0,
            received_dropped INTEGER DEFAULT 0,
            sent_total INTEGER DEFAULT 0,
            sent_offer INTEGER DEFAULT 0,
            sent_ack INTEGER DEFAULT 0,
            sent_failed INTEGER DEFAULT 0
        )
    """


def is_open(func):
    """
    Decorator to verify DB connection, cursor are still usable.
    """

    @wraps(func)
    def wrapper(self, *args, **kwargs):
        if not isinstance(getattr(self, "_conn", None), Connection):
            raise RuntimeError("DB connection closed or invalid.")
        if not isinstance(getattr(self, "_cursor", None), Cursor):
            raise RuntimeError("DB cursor closed or invalid.")
        return func(self, *args, **kwargs)

    return wrapper


class DHCPStats:
    """
    Purpose:
        DHCP responder runtime counters in an in-memory SQLite DB.
        All counters live in a single-row table with id=1.

    Usage:
        stats = DHCPStats(logger)
        stats.increment("received_total")
        stats.save_to_disk(path)
        stats.close()

    Notes:
        - Only counters defined in the schema can be incremented.
    """

    def __init__(self, logger: Logger):
        self._lock = RLock()
        self.logger = logger
        with self._lock:
            self._conn: Connection = connect(":memory:", check_same_thread=False)
            self._cursor: Cursor = self._conn.cursor()
            self._cursor.execute(DHCPStatsSchema.schema)
            self._cursor.execute("INSERT INTO stats (id) VALUES (1)")
            self._conn.commit()
        self.logger.debug("%s initialized.", self.__class__.__name__)

    @is_open
    def increment(self, key: str, count: int = 1):
        """
        Increment a numeric stat column by count.
        Args:
            key (str): Stat column to increment.
            count (int): Amount to increment by (default 1).
        """
        if key not in DHCPStatsSchema.counters:
            raise ValueError(f"Invalid input: {key}")

        with self._lock:
            self._cursor.execute(
                f"""
                UPDATE stats
                SET {key} = {key} + ?,
                    last_updated = ?
                WHERE id = 1
                """,
                (count, int(time())),
            )
            self._conn.commit()

    @is_open
    def get(self, key: str) -> int:
        if key not in DHCPStatsSchema.counters:
            raise ValueError(f"Invalid input: {key}")
        with self._lock:
            self._cursor.execute(f"SELECT {key} FROM stats WHERE id = 1")
            return int(self._cursor.fetchone()[0])

    @is_open
    def snapshot(self) -> dict[str, int]:
        with self._lock:
            self._cursor.execute("SELECT * FROM stats WHERE id = 1")
            _columns = [column[0] for column in self._cursor.description]
            return dict(zip(_columns, self._cursor.fetchone()))

    @is_open
    def save_to_disk(self, path: Path):
        """
        Persist the in-memory database to disk file.
        Args:
            path (Path): Destination file path.
        """
        with self._lock:
            Path(path).parent.mkdir(parents=True, exist_ok=True)
            _conn_disk: Connection = connect(path)
            self._conn.backup(_conn_disk)
            _conn_disk.close()

    def close(self):
        """
        Close DB cursor and connection cleanly.
        """
        with self._lock:
            if getattr(self, "_cursor", None) is not None:
                self._cursor.close()
            if getattr(self, "_conn", None) is not None:
                self._conn.close()
            self._cursor = None
            self._conn = None
            self.logger.debug("%s shutdown.", self.__class__.__name__)
