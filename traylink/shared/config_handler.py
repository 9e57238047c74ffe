import asyncio
import copy
import logging
import os
import time
import toml
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer
from traylink.core.log_setup import get_logger
from traylink.shared import config_template
from traylink.shared.events import EventEmitter
from traylink.shared.path_handler import PathHandler

_MISSING_SETTING_SENTINEL = object()

CustomIcon = Tuple[str, str, str]


class ConfigReloadHandler(FileSystemEventHandler):
    """Watchdog handler forwarding modifications of one file to a callback."""

    def __init__(self, callback: Callable[[], None], watched_path: Path):
        super().__init__()
        self.callback = callback
        self.last = 0.0
        self._watched = Path(watched_path).resolve()

    def on_modified(self, event):
        try:
            p = Path(os.fsdecode(event.src_path)).resolve()
        except OSError:
            return
        if p == self._watched:
            now = time.time()
            if now - self.last > 0.5:
                self.last = now
                self.callback()

    on_created = on_modified
    on_moved = on_modified


class ConfigHandler:
    """
    Settings store backed by config.toml.

    Handles file I/O, merging with defaults and change notification. The
    watched settings are exposed as events named ``changed::<setting>``,
    emitted on the asyncio loop thread only.
    """

    SETTINGS: Dict[str, List[str]] = {
        "icon-size": ["icons", "icon_size"],
        "custom-icons": ["icons", "custom_icons"],
    }

    def __init__(self, config_file: Optional[os.PathLike | str] = None):
        self.logger = get_logger(__name__)
        self.default_config = copy.deepcopy(config_template.default_config)
        if config_file is None:
            config_file = PathHandler().get_config_dir() / "config.toml"
        self.config_file = Path(config_file)
        self._last_mod_time: float = 0.0
        self._load_successful: bool = False
        self._observer: Optional[Any] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._events = EventEmitter(
            (f"changed::{key}" for key in self.SETTINGS), owner="settings"
        )
        self.config_data: Dict[str, Any] = self.load_config()

    def connect(self, event: str, callback: Callable[[], None]) -> int:
        return self._events.connect(event, callback)

    def disconnect(self, handler_id: int) -> bool:
        return self._events.disconnect(handler_id)

    def _strip_hints(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Recursively removes the keys ending with '_hint' from a configuration
        dictionary destined for TOML.
        """
        stripped_data = {}
        for key, value in data.items():
            if key.endswith("_hint"):
                continue
            if isinstance(value, dict):
                stripped_data[key] = self._strip_hints(value)
            else:
                stripped_data[key] = copy.deepcopy(value)
        return stripped_data

    @property
    def default_config_stripped(self) -> Dict[str, Any]:
        """Returns the default config without any setting metadata hints."""
        return self._strip_hints(self.default_config)

    def _recursive_merge(
        self,
        user_config: Dict[str, Any],
        default_config: Dict[str, Any],
    ) -> bool:
        """
        Recursively merges missing keys from `default_config` into `user_config`.
        Returns:
            True if any key was added, indicating a write-back is needed.
        """
        write_back_needed = False
        for key, default_value in default_config.items():
            if key not in user_config:
                user_config[key] = default_value
                write_back_needed = True
            elif isinstance(default_value, dict) and isinstance(
                user_config.get(key), dict
            ):
                if self._recursive_merge(user_config[key], default_value):
                    write_back_needed = True
        return write_back_needed

    def save_config(self) -> bool:
        """Writes the current state of self.config_data to the TOML file."""
        if not self._load_successful:
            self.logger.warning(
                "Skipping configuration save: the config file failed to load, fix it manually."
            )
            return False
        try:
            self.config_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_file, "w") as f:
                toml.dump(self.config_data, f)
            self._last_mod_time = os.path.getmtime(self.config_file)
            self.logger.debug("Configuration saved successfully.")
            return True
        except OSError as e:
            self.logger.error(f"Failed to save configuration to {self.config_file}: {e}")
            return False

    def load_config(self) -> Dict[str, Any]:
        """
        Loads the configuration from file, or uses defaults if missing/corrupt.
        A missing file is created from the defaults, a corrupt one is left alone.
        """
        config_from_file: Dict[str, Any] = {}
        file_must_be_created = not self.config_file.exists()
        if file_must_be_created:
            self.logger.info("Config file is missing. Will apply defaults and create.")
            self._load_successful = True
        else:
            try:
                with open(self.config_file, "r") as f:
                    config_from_file = toml.load(f)
                self._last_mod_time = os.path.getmtime(self.config_file)
                self._load_successful = True
            except (OSError, toml.TomlDecodeError) as e:
                self.logger.error(
                    f"Failed to load {self.config_file}: {e}. Using default configuration."
                )
                config_from_file = {}
                self._load_successful = False
        self._recursive_merge(config_from_file, self.default_config_stripped)
        if file_must_be_created:
            self.config_data = config_from_file
            self.save_config()
        return config_from_file

    def reload_config(self) -> None:
        """Re-reads the file and notifies about every watched setting that changed."""
        try:
            current_mod_time = os.path.getmtime(self.config_file)
        except FileNotFoundError:
            self.logger.warning("Config file not found during change check.")
            return
        if current_mod_time <= self._last_mod_time:
            self.logger.debug("Change event received but ignored due to debounce.")
            return
        before = {key: self.get_root_setting(path) for key, path in self.SETTINGS.items()}
        self.config_data = self.load_config()
        self.logger.info("Configuration reloaded from file.")
        for key, path in self.SETTINGS.items():
            if self.get_root_setting(path) != before[key]:
                self._events.emit(f"changed::{key}")

    def get_root_setting(self, key_path: List[str], default_value: Any = None) -> Any:
        """
        Traverses the configuration dict to retrieve a value.
        Args:
            key_path: List of strings representing the path (e.g., ['icons', 'icon_size']).
            default_value: Value to return if the path is not found.
        """
        current_data = self.config_data
        for i, key in enumerate(key_path):
            if isinstance(current_data, dict) and key in current_data:
                current_data = current_data[key]
            else:
                self.logger.debug(
                    f"Missing configuration key at path: {' -> '.join(key_path[: i + 1])}. Using default value: {default_value}"
                )
                return default_value
        return current_data

    def set_root_setting(self, key_path: List[str], new_value: Any) -> bool:
        """Sets a configuration value, saves it and notifies subscribers."""
        if not key_path:
            self.logger.error("Configuration key path cannot be empty.")
            return False
        if not self._load_successful:
            self.logger.warning(
                f"Update to key {' -> '.join(key_path)} skipped: config file failed to load."
            )
            return False
        current_data = self.config_data
        for key in key_path[:-1]:
            if not isinstance(current_data.get(key), dict):
                current_data[key] = {}
            current_data = current_data[key]
        old_value = current_data.get(key_path[-1], _MISSING_SETTING_SENTINEL)
        current_data[key_path[-1]] = new_value
        self.logger.info(f"Set config key {' -> '.join(key_path)} to {new_value}.")
        self.save_config()
        if old_value != new_value:
            for key, path in self.SETTINGS.items():
                if path == list(key_path):
                    self._events.emit(f"changed::{key}")
        return True

    def get_icon_size(self) -> int:
        value = self.get_root_setting(self.SETTINGS["icon-size"], 0)
        try:
            return int(value)
        except (TypeError, ValueError):
            self.logger.warning(f"Invalid icon_size {value!r}, ignoring it.")
            return 0

    def get_log_level(self) -> int:
        name = str(self.get_root_setting(["logging", "level"], "INFO")).upper()
        level = logging.getLevelName(name)
        if not isinstance(level, int):
            self.logger.warning(f"Invalid logging level {name!r}, using INFO.")
            return logging.INFO
        return level

    def get_custom_icons(self) -> List[CustomIcon]:
        custom_icons = []
        for entry in self.get_root_setting(self.SETTINGS["custom-icons"], []) or []:
            if not isinstance(entry, (list, tuple)) or len(entry) != 3:
                self.logger.warning(f"Ignoring malformed custom icon entry {entry!r}.")
                continue
            indicator_id, normal_icon, attention_icon = entry
            custom_icons.append((str(indicator_id), normal_icon, attention_icon))
        return custom_icons

    def _schedule_reload(self) -> None:
        if self._loop is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self.reload_config)

    def start_watcher(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """
        Watches config.toml for external edits. Watchdog calls back from its own
        thread, so reloads are handed over to the asyncio loop.
        """
        if self._observer is not None:
            return
        self._loop = loop or asyncio.get_running_loop()
        handler = ConfigReloadHandler(self._schedule_reload, self.config_file)
        observer = Observer()
        observer.schedule(handler, str(self.config_file.parent), recursive=False)
        observer.daemon = True
        observer.start()
        self._observer = observer

    def stop_watcher(self) -> None:
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join(timeout=2)
        self._observer = None
        self._loop = None
