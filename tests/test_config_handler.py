import asyncio
import os
import toml
from traylink.shared.config_handler import ConfigHandler


def bump_mtime(path):
    stat = os.stat(path)
    os.utime(path, (stat.st_atime, stat.st_mtime + 5))


def test_missing_file_is_created_from_defaults(tmp_path):
    config_file = tmp_path / "traylink" / "config.toml"
    handler = ConfigHandler(config_file)
    assert config_file.exists()
    saved = toml.load(config_file)
    assert saved["icons"] == {"icon_size": 0, "custom_icons": []}
    assert "icon_size_hint" not in saved["icons"]
    assert handler.get_icon_size() == 0
    assert handler.get_custom_icons() == []


def test_user_values_are_kept_and_defaults_merged(tmp_path):
    config_file = tmp_path / "config.toml"
    config_file.write_text("[icons]\nicon_size = 32\n")
    handler = ConfigHandler(config_file)
    assert handler.get_icon_size() == 32
    assert handler.get_root_setting(["logging", "level"]) == "INFO"
    assert handler.get_root_setting(["nope", "nothing"], "fallback") == "fallback"


def test_set_root_setting_saves_and_notifies(settings):
    events = []
    settings.connect("changed::icon-size", lambda: events.append("icon-size"))
    settings.connect("changed::custom-icons", lambda: events.append("custom-icons"))

    assert settings.set_root_setting(["icons", "icon_size"], 22)
    assert settings.set_root_setting(["icons", "icon_size"], 22)
    assert settings.set_root_setting(["logging", "level"], "DEBUG")
    assert events == ["icon-size"]
    assert toml.load(settings.config_file)["icons"]["icon_size"] == 22
    assert not settings.set_root_setting([], 1)


def test_reload_notifies_only_changed_settings(settings):
    events = []
    settings.connect("changed::icon-size", lambda: events.append("icon-size"))
    settings.connect("changed::custom-icons", lambda: events.append("custom-icons"))

    data = toml.load(settings.config_file)
    data["icons"]["custom_icons"] = [["nm-applet", "network-wireless", "network-error"]]
    with open(settings.config_file, "w") as f:
        toml.dump(data, f)
    bump_mtime(settings.config_file)

    settings.reload_config()
    assert events == ["custom-icons"]
    assert settings.get_custom_icons() == [
        ("nm-applet", "network-wireless", "network-error")
    ]

    # same mtime: nothing to do
    settings.reload_config()
    assert events == ["custom-icons"]


def test_malformed_values_are_ignored(tmp_path):
    config_file = tmp_path / "config.toml"
    config_file.write_text(
        '[icons]\nicon_size = "big"\n'
        'custom_icons = [["only-two", "entries"], ["app", "normal", "attention"]]\n'
    )
    handler = ConfigHandler(config_file)
    assert handler.get_icon_size() == 0
    assert handler.get_custom_icons() == [("app", "normal", "attention")]


def test_broken_file_is_never_overwritten(tmp_path):
    config_file = tmp_path / "config.toml"
    config_file.write_text("[icons\nicon_size = ")
    handler = ConfigHandler(config_file)
    assert handler.get_icon_size() == 0
    assert not handler.set_root_setting(["icons", "icon_size"], 16)
    assert not handler.save_config()
    assert config_file.read_text() == "[icons\nicon_size = "


def test_watcher_hands_reloads_to_the_loop(settings):
    events = []
    settings.connect("changed::icon-size", lambda: events.append("icon-size"))

    async def main():
        settings.start_watcher()
        settings.start_watcher()
        try:
            data = toml.load(settings.config_file)
            data["icons"]["icon_size"] = 40
            with open(settings.config_file, "w") as f:
                toml.dump(data, f)
            bump_mtime(settings.config_file)
            for _ in range(50):
                if events:
                    break
                await asyncio.sleep(0.05)
        finally:
            settings.stop_watcher()
        settings.stop_watcher()

    asyncio.run(main())
    assert events == ["icon-size"]
    assert settings.get_icon_size() == 40
