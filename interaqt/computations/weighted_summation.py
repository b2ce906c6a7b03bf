"""WeightedSummation: sum of ``weight * value`` over one or more record sets."""

from ..util.values import call_maybe_async, finite_number
from .aggregate import GlobalAggregateHandle, PropertyAggregateHandle, record_ref_name


class WeightedSummationMixin:
    kind = "WeightedSummation"

    async def item_value(self, item, data_deps):
        pair = await call_maybe_async(self.args.match_record_to_weight, item) or {}
        return finite_number(pair.get("weight")) * finite_number(pair.get("value"))


class GlobalWeightedSummationHandle(WeightedSummationMixin, GlobalAggregateHandle):
    def source_names(self):
        return [record_ref_name(record) for record in self.args.records]


class PropertyWeightedSummationHandle(WeightedSummationMixin, PropertyAggregateHandle):
    def relation_ref(self):
        return self.args.records[0] if self.args.records else None
