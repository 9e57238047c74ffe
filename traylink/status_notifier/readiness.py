import typing


class ReadinessGate:
    """
    An item is ready once its bus name has an owner and both Id and Menu are
    known. ``update`` reports only the not-ready to ready transition.
    """

    def __init__(self):
        self.is_ready = False

    @staticmethod
    def compute(
        has_name_owner: bool,
        item_id: typing.Optional[str],
        menu_path: typing.Optional[str],
    ) -> bool:
        return bool(has_name_owner and item_id and menu_path)

    def update(
        self,
        has_name_owner: bool,
        item_id: typing.Optional[str],
        menu_path: typing.Optional[str],
    ) -> bool:
        was_ready = self.is_ready
        self.is_ready = self.compute(has_name_owner, item_id, menu_path)
        return self.is_ready and not was_ready
