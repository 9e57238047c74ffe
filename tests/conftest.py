import asyncio
import os
import typing
import pytest
from dbus_fast import DBusError
from PIL import Image
from traylink.errors import UNKNOWN_METHOD
from traylink.icons.theme import SearchPathIconTheme
from traylink.shared.config_handler import ConfigHandler
from traylink.shared.concurrency_helper import Cancellable
from traylink.status_notifier._dbus_proxy import ItemBusProxy
from traylink.status_notifier.item import StatusNotifierItem
from traylink.status_notifier.liveness import LivenessMonitor
from traylink.status_notifier.property_sync import PropertySynchronizer

FAILED = "org.freedesktop.DBus.Error.Failed"


def dbus_error(name: str = FAILED, text: str = "boom") -> DBusError:
    return DBusError(name, text)


def unknown_method() -> DBusError:
    return dbus_error(UNKNOWN_METHOD, "No such method")


class FakeItemProxy(ItemBusProxy):
    """In-memory peer: ``remote`` holds what the application exports."""

    def __init__(
        self,
        remote: typing.Optional[typing.Dict[str, typing.Any]] = None,
        bus_name: str = ":1.42",
        object_path: str = "/StatusNotifierItem",
        name_owner: typing.Optional[str] = ":1.42",
    ):
        super().__init__(bus_name, object_path)
        self.remote: typing.Dict[str, typing.Any] = dict(remote or {})
        self.initial_owner = name_owner
        self.calls: typing.List[typing.Tuple[str, typing.Tuple[typing.Any, ...]]] = []
        self.fetches: typing.List[str] = []
        self.method_errors: typing.Dict[str, BaseException] = {}
        self.fetch_errors: typing.Dict[str, BaseException] = {}
        self.fetch_gate: typing.Optional[asyncio.Event] = None
        self.init_error: typing.Optional[BaseException] = None
        self.closed = False

    async def init(self, cancellable: Cancellable) -> None:
        cancellable.raise_if_cancelled()
        await asyncio.sleep(0)
        if self.init_error is not None:
            raise self.init_error
        self.name_owner = self.initial_owner
        if self.name_owner:
            for name, value in self.remote.items():
                self.properties.set(name, value)

    async def fetch_property(self, name: str) -> typing.Any:
        self.fetches.append(name)
        if self.fetch_gate is not None:
            await self.fetch_gate.wait()
        else:
            await asyncio.sleep(0)
        if name in self.fetch_errors:
            raise self.fetch_errors[name]
        return self.remote.get(name)

    async def call_method(self, member: str, signature: str, *args: typing.Any) -> typing.Any:
        self.calls.append((member, args))
        await asyncio.sleep(0)
        if member in self.method_errors:
            raise self.method_errors[member]
        return []

    async def get_connection_pid(self) -> int:
        return os.getpid()

    def close(self) -> None:
        self.closed = True
        super().close()

    def called(self, member: str) -> typing.List[typing.Tuple[typing.Any, ...]]:
        return [args for name, args in self.calls if name == member]

    def emit_signal(self, name: str, *params: typing.Any) -> None:
        self.events.emit("signal", name, list(params))

    def set_owner(self, owner: typing.Optional[str]) -> None:
        self.name_owner = owner
        if owner:
            for name, value in self.remote.items():
                self.properties.set(name, value)
        self.events.emit("name-owner-changed")


class FakeLaunchContext:
    def __init__(self):
        self.issued: typing.List[str] = []
        self.failed: typing.List[str] = []

    def get_startup_notify_id(
        self, command_line: str, app_id: typing.Optional[str], timestamp: int
    ) -> str:
        token = f"{app_id}-{len(self.issued)}_TIME{timestamp}"
        self.issued.append(token)
        return token

    def launch_failed(self, token: str) -> None:
        self.failed.append(token)


READY_ITEM = {
    "Id": "example-app",
    "Title": "Example App",
    "Status": "Active",
    "Menu": "/MenuBar",
    "IconName": "example",
}


async def settle(delay: float = 0.05) -> None:
    """Lets timers shrunk by ``fast_timers`` and the tasks they spawn run."""
    await asyncio.sleep(delay)


async def ready_item(
    remote: typing.Optional[typing.Dict[str, typing.Any]] = None, **kwargs: typing.Any
) -> typing.Tuple[StatusNotifierItem, FakeItemProxy]:
    proxy = FakeItemProxy(READY_ITEM if remote is None else remote)
    item = StatusNotifierItem(proxy, **kwargs)
    await settle()
    return item, proxy


def write_png(path: os.PathLike, width: int, height: int, color=(255, 0, 0, 255)) -> str:
    os.makedirs(os.path.dirname(path), exist_ok=True)
    Image.new("RGBA", (width, height), color).save(path)
    return str(path)


def write_index_theme(theme_dir: os.PathLike, directories: typing.Dict[str, str]) -> None:
    """directories maps a theme subdirectory to the body of its section."""
    lines = [
        "[Icon Theme]",
        f"Name={os.path.basename(theme_dir)}",
        "Comment=Test theme",
        f"Directories={','.join(directories)}",
        "",
    ]
    for directory, body in directories.items():
        lines += [f"[{directory}]", body, ""]
    os.makedirs(theme_dir, exist_ok=True)
    with open(os.path.join(theme_dir, "index.theme"), "w") as f:
        f.write("\n".join(lines))


@pytest.fixture
def fast_timers(monkeypatch):
    monkeypatch.setattr(StatusNotifierItem, "NEEDED_PROPERTIES_DELAY", 0.01)
    monkeypatch.setattr(PropertySynchronizer, "SIGNAL_ACCUMULATE_DELAY", 0.01)
    monkeypatch.setattr(LivenessMonitor, "CHECK_ALIVE_DELAY", 0.01)


@pytest.fixture
def icon_dir(tmp_path):
    """A search path entry with a hicolor theme and a few loose icons."""
    base = tmp_path / "icons"
    write_png(base / "hicolor" / "16x16" / "apps" / "example-panel.png", 16, 16)
    write_png(base / "hicolor" / "24x24" / "apps" / "example-panel.png", 24, 24)
    write_png(base / "hicolor" / "48x48" / "apps" / "example-panel.png", 48, 48)
    write_png(base / "hicolor" / "22x22" / "status" / "overlay.png", 22, 22)
    write_png(base / "hicolor" / "22x22" / "status" / "custom-normal.png", 22, 22)
    write_png(base / "multiload.png", 66, 22)
    write_index_theme(
        base / "hicolor",
        {
            "16x16/apps": "Size=16\nType=Fixed",
            "24x24/apps": "Size=24\nType=Fixed",
            "48x48/apps": "Size=48\nType=Fixed",
            "22x22/status": "Size=22\nType=Fixed",
        },
    )
    return base


@pytest.fixture
def theme(icon_dir):
    return SearchPathIconTheme([str(icon_dir)])


@pytest.fixture
def settings(tmp_path):
    return ConfigHandler(tmp_path / "config" / "config.toml")
