from enum import Enum, unique
from json import load
from pathlib import Path
from threading import RLock, Timer
from types import MappingProxyType
from typing import Any, Callable

from pydantic import BaseModel
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from yaml import safe_load


class Config:
    """Defines application level Config"""

    def __init__(self, path: Path, schema: type[BaseModel] | None = None):
        self._lock = RLock()
        self._path: Path = path
        self._schema = schema
        self._config = {}
        self._load()

    @classmethod
    def _is_json(cls, path: Path) -> bool:
        return path.suffix.lower() == ".json"

    @classmethod
    def _is_yaml(cls, path: Path) -> bool:
        return path.suffix.lower() in (".yaml", ".yml")

    def _load(self):
        """
        Load file from fs.
        Only loads known file types, YAML is validated against the schema when given.
        """
        with self._lock:
            with open(self._path, mode="r", encoding="utf-8") as _file_handle:
                if self._is_json(self._path):
                    self._config = load(_file_handle).get("payload") or {}
                    return
                if self._is_yaml(self._path):
                    _raw = safe_load(_file_handle)
                    if self._schema is not None:
                        # Schema defaults fill keys left out of the file
                        _raw = self._schema.model_validate(_raw).model_dump(
                            mode="json", by_alias=True
                        )
                    self._config = _raw
                    return
                raise TypeError("Unsupported file type JSON+YAML")

    def reload(self):
        """Reload"""
        self._load()

    def get(self, key: str) -> Any:
        """
        Get parameter from config.
        Args:
            key(str): Name for which config is required.
        """

        if not isinstance(key, str) or not key:
            raise ValueError("Key must be a non-empty str.")

        with self._lock:
            if key not in self._config:
                raise RuntimeError(f"Unknown key {key}.")
            _value = self._config[key]
            if isinstance(_value, dict):
                return MappingProxyType(_value)
            return _value

    def get_config(self) -> MappingProxyType:
        """
        Get config dict as Proxy.
        """
        with self._lock:
            return MappingProxyType(self._config)


class OnFileChangeConfigHandler(FileSystemEventHandler):
    """Calls `reload_function` once a watched file settles after a change."""

    def __init__(self, file_path: Path, reload_delay: float, reload_function: Callable[[], Any]):
        super().__init__()
        self._lock = RLock()
        self._file_path = Path(file_path).resolve()
        self._reload_delay = reload_delay
        self._reload_function = reload_function
        self._timer: Timer | None = None

    def _is_target(self, event: FileSystemEvent) -> bool:
        if event.is_directory:
            return False
        _paths = [event.src_path, getattr(event, "dest_path", "")]
        return any(_path and Path(_path).resolve() == self._file_path for _path in _paths)

    def _schedule(self):
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._timer = Timer(self._reload_delay, self._reload_function)
            self._timer.daemon = True
            self._timer.start()

    def on_modified(self, event: FileSystemEvent):
        if self._is_target(event):
            self._schedule()

    def on_created(self, event: FileSystemEvent):
        if self._is_target(event):
            self._schedule()

    def on_moved(self, event: FileSystemEvent):
        if self._is_target(event):
            self._schedule()

    def cancel(self):
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None


@unique
class LogLevel(Enum):
    """LogLevel"""

    DEBUG = 10
    INFO = 20
    WARNING = 30
    ERROR = 40
    CRITICAL = 50

    @classmethod
    def _missing_(cls, value):
        """Handle cases where a value passed to the Enum is not found among its members"""
        if isinstance(value, str):
            value = value.strip().upper()
            for member in cls:
                if member.name == value:
                    return member
        return cls.DEBUG  # fallback
