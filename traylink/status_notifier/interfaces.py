import functools
import typing
from dataclasses import dataclass
from dbus_fast.introspection import Interface, Node

STATUS_NOTIFIER_ITEM_XML: typing.Final[str] = """
<!DOCTYPE node PUBLIC "-//freedesktop//DTD D-BUS Object Introspection 1.0//EN"
"http://www.freedesktop.org/standards/dbus/1.0/introspect.dtd">
<node>
  <interface name="org.kde.StatusNotifierItem">
    <method name="ContextMenu">
      <arg type="i" direction="in" name="x"/>
      <arg type="i" direction="in" name="y"/>
    </method>
    <method name="Activate">
      <arg type="i" direction="in" name="x"/>
      <arg type="i" direction="in" name="y"/>
    </method>
    <method name="SecondaryActivate">
      <arg type="i" direction="in" name="x"/>
      <arg type="i" direction="in" name="y"/>
    </method>
    <method name="XAyatanaSecondaryActivate">
      <arg type="u" direction="in" name="timestamp"/>
    </method>
    <method name="Scroll">
      <arg type="i" direction="in" name="delta"/>
      <arg type="s" direction="in" name="orientation"/>
    </method>
    <method name="ProvideXdgActivationToken">
      <arg type="s" direction="in" name="token"/>
    </method>
    <signal name="NewTitle"/>
    <signal name="NewIcon"/>
    <signal name="NewAttentionIcon"/>
    <signal name="NewOverlayIcon"/>
    <signal name="NewMenu"/>
    <signal name="NewToolTip"/>
    <signal name="NewIconThemePath">
      <arg type="s" name="icon_theme_path"/>
    </signal>
    <signal name="NewStatus">
      <arg type="s" name="status"/>
    </signal>
    <signal name="XAyatanaNewLabel">
      <arg type="s" name="label"/>
      <arg type="s" name="guide"/>
    </signal>
    <property name="Category" type="s" access="read"/>
    <property name="Id" type="s" access="read"/>
    <property name="Title" type="s" access="read"/>
    <property name="Status" type="s" access="read"/>
    <property name="WindowId" type="i" access="read"/>
    <property name="IconThemePath" type="s" access="read"/>
    <property name="Menu" type="o" access="read"/>
    <property name="ItemIsMenu" type="b" access="read"/>
    <property name="IconName" type="s" access="read"/>
    <property name="IconPixmap" type="a(iiay)" access="read"/>
    <property name="OverlayIconName" type="s" access="read"/>
    <property name="OverlayIconPixmap" type="a(iiay)" access="read"/>
    <property name="AttentionIconName" type="s" access="read"/>
    <property name="AttentionIconPixmap" type="a(iiay)" access="read"/>
    <property name="AttentionMovieName" type="s" access="read"/>
    <property name="ToolTip" type="(sa(iiay)ss)" access="read"/>
  </interface>
</node>
"""

EXTENSION_PROPERTIES: typing.Final[typing.Tuple[str, ...]] = (
    "XAyatanaLabel",
    "XAyatanaLabelGuide",
    "XAyatanaOrderingIndex",
    "IconAccessibleDesc",
    "AttentionAccessibleDesc",
)
"""Vendor and accessibility properties that are not part of the interface XML."""


@dataclass(frozen=True)
class InterfaceDescriptor:
    """Immutable view of the StatusNotifierItem interface."""

    name: str
    properties: typing.FrozenSet[str]
    signals: typing.FrozenSet[str]
    methods: typing.FrozenSet[str]
    introspection: Interface

    @property
    def known_properties(self) -> typing.FrozenSet[str]:
        """Interface properties plus the extension ones."""
        return self.properties | frozenset(EXTENSION_PROPERTIES)


@functools.cache
def item_interface() -> InterfaceDescriptor:
    """
    Parses the interface description the first time it is needed and returns
    the same descriptor afterwards. ``reset_item_interface`` drops it.
    """
    interface = Node.parse(STATUS_NOTIFIER_ITEM_XML).interfaces[0]
    return InterfaceDescriptor(
        name=interface.name,
        properties=frozenset(p.name for p in interface.properties),
        signals=frozenset(s.name for s in interface.signals),
        methods=frozenset(m.name for m in interface.methods),
        introspection=interface,
    )


reset_item_interface = item_interface.cache_clear
