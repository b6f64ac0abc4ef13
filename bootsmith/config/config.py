from os import getenv
from pathlib import Path

from dotenv import load_dotenv
from watchdog.observers import Observer
from watchdog.observers.api import BaseObserver

from bootsmith.config.schema import ConfigSchema
from bootsmith.models.models import Config, OnFileChangeConfigHandler

load_dotenv()

ROOT_PATH = Path(getenv("ROOT_PATH", Path(__file__).resolve().parents[2]))
CONFIG_DIR = getenv("CONFIG_DIR", "config")
CONFIG_PATH: Path = ROOT_PATH / CONFIG_DIR

CONFIG_FILE = getenv("CONFIG_FILE", "config.yaml")
CONFIG_FILEPATH: Path = CONFIG_PATH / CONFIG_FILE


config = Config(path=CONFIG_FILEPATH, schema=ConfigSchema)


def start_file_watcher(file_path: Path, reload_delay: float, reload_function) -> BaseObserver:
    """Watch `file_path` and call `reload_function` after `reload_delay` seconds of quiet."""
    observer: BaseObserver = Observer()
    observer.schedule(
        event_handler=OnFileChangeConfigHandler(
            file_path=file_path,
            reload_delay=reload_delay,
            reload_function=reload_function,
        ),
        path=str(file_path.parent),
        recursive=False,
    )
    observer.daemon = True
    observer.start()
    return observer
