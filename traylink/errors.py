import typing
from dbus_fast import DBusError

UNKNOWN_OBJECT: typing.Final[str] = "org.freedesktop.DBus.Error.UnknownObject"
UNKNOWN_INTERFACE: typing.Final[str] = "org.freedesktop.DBus.Error.UnknownInterface"
UNKNOWN_METHOD: typing.Final[str] = "org.freedesktop.DBus.Error.UnknownMethod"
UNKNOWN_PROPERTY: typing.Final[str] = "org.freedesktop.DBus.Error.UnknownProperty"

REMOTE_UNAVAILABLE_ERRORS: typing.Final[frozenset[str]] = frozenset(
    {UNKNOWN_OBJECT, UNKNOWN_INTERFACE, UNKNOWN_METHOD, UNKNOWN_PROPERTY}
)


class TrayLinkError(Exception):
    """Base class for the errors raised by traylink."""


class Cancelled(TrayLinkError):
    """
    A cooperative cancellation reached a caller.

    Raised instead of ``asyncio.CancelledError`` when the token that owned the
    operation fired, so the caller's own task is left uncancelled. Never logged
    above debug and always swallowed by whoever started the operation.
    """


class IconLoadCancelled(Cancelled):
    """A newer load for the same icon slot superseded this one."""

    def __init__(self, load_id: str):
        super().__init__(f"Icon load {load_id} was superseded or cancelled")
        self.load_id = load_id


class IconLoadPending(TrayLinkError):
    """The very same icon id is already loading for the slot."""

    def __init__(self, load_id: str, task: typing.Any = None):
        super().__init__(f"Icon {load_id} is already loading")
        self.load_id = load_id
        self.task = task


class InvalidImageError(TrayLinkError):
    """Image data is malformed: bad pixmap size, unreadable header."""


def dbus_error_name(error: BaseException) -> typing.Optional[str]:
    if isinstance(error, DBusError):
        return error.type
    return None


def is_remote_unavailable(error: BaseException) -> bool:
    """True for unknown object/interface/method/property replies."""
    return dbus_error_name(error) in REMOTE_UNAVAILABLE_ERRORS


def is_unknown_method(error: BaseException) -> bool:
    return dbus_error_name(error) == UNKNOWN_METHOD
