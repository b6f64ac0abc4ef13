from collections.abc import Iterable, Mapping
from functools import wraps
from ipaddress import IPv4Address
from logging import Logger
from pathlib import Path
from sqlite3 import Connection, Cursor, IntegrityError, connect
from threading import RLock
from time import time

from bootsmith.services.registry.models import (
    InstanceInfo,
    Machine,
    MachineType,
    PoolExhausted,
    RegistryError,
    VariableNotFound,
)

CLUSTER_SCOPE = ""

MACHINES_SCHEMA = """
    CREATE TABLE IF NOT EXISTS machines (
        mac TEXT PRIMARY KEY,
        ip TEXT NOT NULL UNIQUE,
        type TEXT DEFAULT 'dynamic',
        first_seen INTEGER NOT NULL,
        last_seen INTEGER NOT NULL
    )
"""
VARIABLES_SCHEMA = """
    CREATE TABLE IF NOT EXISTS variables (
        mac TEXT NOT NULL DEFAULT '',
        key TEXT NOT NULL,
        value TEXT NOT NULL,
        PRIMARY KEY (mac, key)
    )
"""


def normalize_mac(mac: str) -> str:
    """aa:bb:cc:dd:ee:ff from any common separator or case."""
    _digits = "".join(char for char in mac if char.isalnum()).lower()
    if len(_digits) != 12 or any(char not in "0123456789abcdef" for char in _digits):
        raise ValueError(f"Invalid hardware address {mac!r}.")
    return ":".join(_digits[index:index + 2] for index in range(0, 12, 2))


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


class MachineStorage:
    """
    Purpose:
        Machine registry backed by an in-memory SQLite database.
        Maps hardware addresses to IPv4 assignments, stores machine and
        cluster level variables and records check-ins.

    Dependencies:
        - sqlite3 (Python standard library): in-memory + file-based database ops.
        - threading.RLock: every lookup/assignment/check-in runs under one lock,
          so a lookup and the following check-in see the same assignment.

    Usage:
        1. Create the storage, optionally seeded from a static map and a file:
            storage = MachineStorage(logger, cluster_name, instances, pool_start, pool_end)
        2. Resolve machines through a per-MAC handle:
            storage.machine_interface(mac).machine()
        3. Manage variables:
            storage.set_variable(key, value, mac=None)
        4. Persist and close:
            storage.save_to_disk(path)
            storage.close()

    Notes:
        - Static entries win over dynamic ones holding the same address.
        - Variables stored with an empty MAC are cluster level.
    """

    def __init__(
        self,
        logger: Logger,
        cluster_name: str,
        instances: Iterable[InstanceInfo],
        ip_pool_start: str,
        ip_pool_end: str,
        auto_assign: bool = True,
        static_map: Mapping[str, str] | None = None,
        path: Path | None = None,
    ):
        self._lock = RLock()
        self.logger = logger
        self._cluster_name = cluster_name
        self._instances = list(instances)
        self._pool_start = int(IPv4Address(ip_pool_start))
        self._pool_end = int(IPv4Address(ip_pool_end))
        if self._pool_start > self._pool_end:
            raise ValueError("IP pool start is after pool end.")
        self.auto_assign = auto_assign
        self._static_map: dict[str, str] = {}

        with self._lock:
            self._conn: Connection = connect(":memory:", check_same_thread=False)
            if path is not None and Path(path).is_file():
                _conn_disk: Connection = connect(path)
                _conn_disk.backup(self._conn)
                _conn_disk.close()
                self.logger.info("Loaded machines from %s.", path)
            self._cursor: Cursor = self._conn.cursor()
            self._cursor.execute(MACHINES_SCHEMA)
            self._cursor.execute(VARIABLES_SCHEMA)
            self._conn.commit()

        if static_map:
            self.load_static_map(static_map)
        self.logger.debug("%s initialized.", self.__class__.__name__)

    def machine_interface(self, mac: str) -> "SQLiteMachineInterface":
        return SQLiteMachineInterface(storage=self, mac=normalize_mac(mac))

    def instances(self) -> list[InstanceInfo]:
        return list(self._instances)

    def cluster_name(self) -> str:
        return self._cluster_name

    @is_open
    def get_machine(self, mac: str) -> Machine | None:
        with self._lock:
            self._cursor.execute(
                "SELECT mac, ip, type, first_seen, last_seen FROM machines WHERE mac = ?",
                (normalize_mac(mac),),
            )
            _row = self._cursor.fetchone()
            return self._to_machine(_row) if _row else None

    @is_open
    def get_machine_by_ip(self, ip: str) -> Machine | None:
        with self._lock:
            self._cursor.execute(
                "SELECT mac, ip, type, first_seen, last_seen FROM machines WHERE ip = ?",
                (ip,),
            )
            _row = self._cursor.fetchone()
            return self._to_machine(_row) if _row else None

    @is_open
    def assign(self, mac: str, create_if_missing: bool = True) -> Machine:
        """Return the machine for `mac`, assigning an address when allowed.

        Raises:
            RegistryError: unknown address and nothing may be assigned.
            PoolExhausted: auto assignment found no free address.
        """
        mac = normalize_mac(mac)
        with self._lock:
            _machine = self.get_machine(mac)
            if _machine is not None:
                return _machine
            if not create_if_missing:
                raise RegistryError(f"No machine for {mac}.")

            _static_ip = self._static_map.get(mac)
            if _static_ip is not None:
                return self._insert(mac, _static_ip, MachineType.STATIC)
            if not self.auto_assign:
                raise RegistryError(f"{mac} is not in the static map and auto assignment is off.")
            return self._insert(mac, self._next_free_ip(), MachineType.DYNAMIC)

    @is_open
    def check_in(self, mac: str) -> None:
        with self._lock:
            self._cursor.execute(
                "UPDATE machines SET last_seen = ? WHERE mac = ?",
                (int(time()), normalize_mac(mac)),
            )
            self._conn.commit()
            if self._cursor.rowcount == 0:
                self.logger.warning("Check-in for unknown machine %s.", mac)

    @is_open
    def remove_machine(self, mac: str) -> bool:
        with self._lock:
            self._cursor.execute("DELETE FROM machines WHERE mac = ?", (normalize_mac(mac),))
            self._conn.commit()
            return self._cursor.rowcount > 0

    @is_open
    def get_variable(self, key: str, mac: str | None = None) -> str:
        """Machine level value when `mac` is given and set, else the cluster value."""
        _scopes = [CLUSTER_SCOPE] if mac is None else [normalize_mac(mac), CLUSTER_SCOPE]
        with self._lock:
            for _scope in _scopes:
                self._cursor.execute(
                    "SELECT value FROM variables WHERE mac = ? AND key = ?", (_scope, key)
                )
                _row = self._cursor.fetchone()
                if _row:
                    return _row[0]
        raise VariableNotFound(f"Variable {key!r} not set.")

    @is_open
    def set_variable(self, key: str, value: str, mac: str | None = None) -> None:
        if not key:
            raise ValueError("Key must be a non-empty str.")
        _scope = CLUSTER_SCOPE if mac is None else normalize_mac(mac)
        with self._lock:
            self._cursor.execute(
                """
                INSERT INTO variables (mac, key, value) VALUES (?, ?, ?)
                ON CONFLICT(mac, key) DO UPDATE SET value = excluded.value
                """,
                (_scope, key, value),
            )
            self._conn.commit()

    @is_open
    def load_static_map(self, static_map: Mapping[str, str]) -> None:
        """Apply a MAC -> IP static map, moving existing machines to their static address."""
        _normalized = {normalize_mac(mac): str(IPv4Address(ip)) for mac, ip in static_map.items()}
        with self._lock:
            self._static_map = _normalized
            for _mac, _ip in _normalized.items():
                _holder = self.get_machine_by_ip(_ip)
                if _holder is not None and _holder.mac != _mac:
                    self.logger.warning(
                        "Static address %s taken from %s for %s.", _ip, _holder.mac, _mac
                    )
                    self.remove_machine(_holder.mac)
                _machine = self.get_machine(_mac)
                if _machine is None:
                    self._insert(_mac, _ip, MachineType.STATIC)
                elif _machine.ip != _ip or _machine.type != MachineType.STATIC:
                    self._cursor.execute(
                        "UPDATE machines SET ip = ?, type = ? WHERE mac = ?",
                        (_ip, str(MachineType.STATIC), _mac),
                    )
            self._conn.commit()
            self.logger.info("Static map loaded with %s entries.", len(_normalized))

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
            self.logger.debug("Machines saved to %s.", path)

    def close(self):
        with self._lock:
            if getattr(self, "_conn", None) is not None:
                self._conn.close()
            self._conn = None
            self._cursor = None

    def _insert(self, mac: str, ip: str, machine_type: MachineType) -> Machine:
        _now = int(time())
        try:
            self._cursor.execute(
                "INSERT INTO machines (mac, ip, type, first_seen, last_seen) VALUES (?, ?, ?, ?, ?)",
                (mac, ip, str(machine_type), _now, _now),
            )
            self._conn.commit()
        except IntegrityError as err:
            raise RegistryError(f"Cannot assign {ip} to {mac}: {err}") from err
        self.logger.info("Assigned %s to %s (%s).", ip, mac, machine_type)
        return Machine(mac=mac, ip=ip, type=machine_type, first_seen=_now, last_seen=_now)

    def _next_free_ip(self) -> str:
        self._cursor.execute("SELECT ip FROM machines")
        _taken = {row[0] for row in self._cursor.fetchall()}
        _taken.update(self._static_map.values())
        _taken.update(instance.ip for instance in self._instances)
        for _candidate in range(self._pool_start, self._pool_end + 1):
            _ip = str(IPv4Address(_candidate))
            if _ip not in _taken:
                return _ip
        raise PoolExhausted("No free address in the pool.")

    @staticmethod
    def _to_machine(row: tuple) -> Machine:
        return Machine(
            mac=row[0],
            ip=row[1],
            type=MachineType(row[2]),
            first_seen=row[3],
            last_seen=row[4],
        )


class SQLiteMachineInterface:
    """MachineInterface of `MachineStorage` for one hardware address."""

    def __init__(self, storage: MachineStorage, mac: str):
        self._storage = storage
        self.mac = mac

    def machine(self, create_if_missing: bool = True) -> Machine:
        return self._storage.assign(self.mac, create_if_missing=create_if_missing)

    def get_variable(self, key: str) -> str:
        return self._storage.get_variable(key, mac=self.mac)

    def check_in(self) -> None:
        self._storage.check_in(self.mac)

