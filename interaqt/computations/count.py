"""Count: number of records, or of related records, that pass ``match``."""

from .aggregate import GlobalAggregateHandle, PropertyAggregateHandle


class CountMixin:
    kind = "Count"

    def configure(self):
        # Without a match every item contributes 1 and no per-item state is kept.
        if self.args.match is None:
            self.constant_item_value = 1

    def default_item_query(self):
        if self.args.attribute_query:
            return list(self.args.attribute_query)
        return ["*"] if self.args.match is not None else ["id"]

    async def item_value(self, item, data_deps):
        if self.args.match is None:
            return 1
        return 1 if await self.matches(item, data_deps) else 0


class GlobalCountHandle(CountMixin, GlobalAggregateHandle):
    pass


class PropertyCountHandle(CountMixin, PropertyAggregateHandle):
    pass
