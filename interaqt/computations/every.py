"""Every: whether all records (or related records) pass ``match``."""

from .aggregate import GlobalAggregateHandle, PropertyAggregateHandle


class EveryMixin:
    kind = "Every"
    result_is_total = False
    total_state_name = "match_count"
    size_state_name = "total_count"

    async def item_value(self, item, data_deps):
        return 1 if await self.matches(item, data_deps) else 0

    def finalize(self, total, size):
        if self.args.not_empty and size == 0:
            return False
        return total == size


class GlobalEveryHandle(EveryMixin, GlobalAggregateHandle):
    pass


class PropertyEveryHandle(EveryMixin, PropertyAggregateHandle):
    pass
