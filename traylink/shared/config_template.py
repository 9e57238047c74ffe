default_config = {
    "_section_hint": (
        "Settings for traylink, the status notifier item client used by the "
        "panel to display application indicators."
    ),
    "icons": {
        "_section_hint": "How indicator icons are sized and overridden.",
        "icon_size": 0,
        "icon_size_hint": (
            "Icon size in logical pixels. **0** keeps the size requested by "
            "the panel; any positive value overrides it for every indicator."
        ),
        "custom_icons": [],
        "custom_icons_hint": (
            "Per-indicator icon overrides as a list of "
            "[indicator id, normal icon, attention icon] triples, e.g. "
            "[['nm-applet', 'network-wireless', 'network-error']]."
        ),
    },
    "logging": {
        "_section_hint": "Diagnostics.",
        "level": "INFO",
        "level_hint": "One of DEBUG, INFO, WARNING, ERROR.",
    },
}
