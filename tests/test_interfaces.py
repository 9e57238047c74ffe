from traylink.status_notifier.interfaces import (
    EXTENSION_PROPERTIES,
    item_interface,
    reset_item_interface,
)


def test_descriptor_is_parsed_once():
    first = item_interface()
    assert item_interface() is first
    reset_item_interface()
    again = item_interface()
    assert again is not first
    assert again.properties == first.properties


def test_descriptor_contents():
    interface = item_interface()
    assert interface.name == "org.kde.StatusNotifierItem"
    assert {"Id", "Menu", "IconPixmap", "ToolTip"} <= interface.properties
    assert "XAyatanaLabel" not in interface.properties
    assert {"NewIcon", "NewStatus", "XAyatanaNewLabel"} <= interface.signals
    assert {"Activate", "Scroll", "ProvideXdgActivationToken"} <= interface.methods


def test_known_properties_include_extensions():
    known = item_interface().known_properties
    assert set(EXTENSION_PROPERTIES) <= known
    assert "IconName" in known
