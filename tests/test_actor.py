import asyncio
import pytest
from PIL import Image
from conftest import READY_ITEM, ready_item, settle
from traylink.icons.actor import IconActor
from traylink.icons.gicon import Emblem, FileIcon
from traylink.icons.load_slots import IconType


def argb_pixmap(size):
    return [(size, size, b"\xff\x00\x80\x00" * size * size)]


async def make_actor(theme, settings=None, remote=None, icon_size=24):
    item, proxy = await ready_item(READY_ITEM if remote is None else remote)
    actor = IconActor(item, icon_size, theme, settings)
    await settle()
    return actor, item, proxy


def test_ready_item_gets_its_themed_icon(theme, icon_dir):
    async def main():
        actor, item, _ = await make_actor(theme)
        assert actor.gicon is not None
        assert actor.gicon.icon == FileIcon(
            str(icon_dir / "hicolor" / "24x24" / "apps" / "example-panel.png")
        )
        assert actor.gicon.icon.in_use
        assert actor.icon_size == 24
        assert actor.emblem is None
        assert "appindicator-icon-example-app" in actor.style_classes
        item.destroy()

    asyncio.run(main())


def test_style_class_normalizes_the_id(theme):
    async def main():
        actor, item, _ = await make_actor(theme, remote=dict(READY_ITEM, Id="My_Cool App"))
        assert "appindicator-icon-my-cool-app" in actor.style_classes
        item.destroy()

    asyncio.run(main())


def test_overlay_becomes_the_emblem(theme):
    async def main():
        actor, item, _ = await make_actor(theme, remote=dict(READY_ITEM, OverlayIconName="overlay"))
        assert actor.emblem is not None
        assert actor.emblem.icon.path.endswith("22x22/status/overlay.png")
        assert actor.gicon.emblems == [actor.emblem]
        assert "OVERLAY:overlay@15:" in actor.resolver.cache
        item.destroy()

    asyncio.run(main())


def test_passive_items_are_not_drawn(theme):
    async def main():
        actor, item, _ = await make_actor(theme, remote=dict(READY_ITEM, Status="Passive"))
        assert actor.gicon is None
        item.destroy()

    asyncio.run(main())


def test_icon_change_replaces_and_releases_the_old_icon(theme):
    async def main():
        actor, item, proxy = await make_actor(theme)
        changes = []
        actor.connect("changed", changes.append)
        old = actor.gicon.icon

        proxy.update_cached_properties({"IconName": "", "IconPixmap": argb_pixmap(24)})
        await settle()
        assert isinstance(actor.gicon.icon, Image.Image)
        assert actor.gicon.icon.getpixel((0, 0)) == (0x00, 0x80, 0x00, 0xFF)
        assert not old.in_use
        assert changes
        item.destroy()

    asyncio.run(main())


def test_attention_status_uses_the_attention_icon(theme):
    async def main():
        actor, item, proxy = await make_actor(
            theme, remote=dict(READY_ITEM, AttentionIconPixmap=argb_pixmap(16))
        )
        assert isinstance(actor.gicon.icon, FileIcon)
        proxy.update_cached_properties({"Status": "NeedsAttention"})
        await settle()
        assert isinstance(actor.gicon.icon, Image.Image)
        item.destroy()

    asyncio.run(main())


def test_icon_size_override_is_applied_and_restored(theme, settings):
    async def main():
        actor, item, _ = await make_actor(theme, settings)
        settings.set_root_setting(["icons", "icon_size"], 48)
        await settle()
        assert actor.icon_size == 48
        assert actor.gicon.icon.path.endswith("48x48/apps/example-panel.png")

        settings.set_root_setting(["icons", "icon_size"], 0)
        await settle()
        assert actor.icon_size == 24
        assert actor.gicon.icon.path.endswith("24x24/apps/example-panel.png")
        item.destroy()

    asyncio.run(main())


def test_custom_icons_replace_the_remote_icon(theme, settings):
    async def main():
        actor, item, proxy = await make_actor(theme, settings)
        settings.set_root_setting(
            ["icons", "custom_icons"],
            [["example-app", "custom-normal", "custom-attention"]],
        )
        await settle()
        assert actor.custom_icons == {
            IconType.NORMAL: "custom-normal",
            IconType.ATTENTION: "custom-attention",
        }
        assert actor.gicon.icon.path.endswith("status/custom-normal.png")

        # no custom-attention icon in the theme: the normal custom icon stays
        proxy.update_cached_properties({"Status": "NeedsAttention"})
        await settle()
        assert actor.gicon.icon.path.endswith("status/custom-normal.png")
        item.destroy()

    asyncio.run(main())


def test_custom_icons_for_other_items_are_ignored(theme, settings):
    async def main():
        settings.set_root_setting(["icons", "custom_icons"], [["other-app", "custom-normal", ""]])
        actor, item, _ = await make_actor(theme, settings)
        assert actor.custom_icons == {}
        assert actor.gicon.icon.path.endswith("apps/example-panel.png")
        item.destroy()

    asyncio.run(main())


def test_invalidation_clears_cache_and_loads_before_resolving(theme):
    async def main():
        actor, item, _ = await make_actor(theme)
        assert len(actor.resolver.cache) == 1
        actor.invalidate()
        assert len(actor.resolver.cache) == 0
        assert actor.resolver.slots.loading(IconType.NORMAL) is None
        await settle()
        assert len(actor.resolver.cache) == 1
        item.destroy()

    asyncio.run(main())


def test_theme_change_and_reset_invalidate(theme):
    async def main():
        actor, item, _ = await make_actor(theme)
        first = actor.gicon.icon
        theme.rescan()
        await settle()
        assert actor.gicon.icon == first
        assert actor.gicon.icon is not first

        second = actor.gicon.icon
        item.reset()
        await settle()
        assert actor.gicon.icon is not second
        item.destroy()

    asyncio.run(main())


def test_scale_factor_change_reloads_bigger_icons(theme):
    async def main():
        actor, item, _ = await make_actor(theme)
        actor.set_scale_factor(2)
        assert actor.height == 48
        await settle()
        assert actor.gicon.icon.path.endswith("48x48/apps/example-panel.png")
        item.destroy()

    asyncio.run(main())


def test_item_destroy_tears_the_actor_down(theme):
    async def main():
        actor, item, proxy = await make_actor(theme)
        changes = []
        actor.connect("changed", changes.append)
        icon = actor.gicon.icon
        item.destroy()
        assert actor.destroyed
        assert actor.gicon is None
        assert not icon.in_use
        actor.invalidate()
        await settle()
        assert changes == []

    asyncio.run(main())


@pytest.mark.parametrize("icon_size, overlay_size", [(16, 10), (24, 15), (32, 20)])
def test_overlay_size_ratio(theme, icon_size, overlay_size):
    async def main():
        actor, item, _ = await make_actor(
            theme, remote=dict(READY_ITEM, OverlayIconName="overlay"), icon_size=icon_size
        )
        assert f"OVERLAY:overlay@{overlay_size}:" in actor.resolver.cache
        assert actor.gicon.emblems == [Emblem(actor.emblem.icon)]
        item.destroy()

    asyncio.run(main())
