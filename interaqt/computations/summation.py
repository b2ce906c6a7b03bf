"""Summation: sum of one numeric field over records or related records."""

from ..util.values import finite_number
from .aggregate import GlobalAggregateHandle, PropertyAggregateHandle, query_path, read_path


class SummationMixin:
    """
    The summed field is the path named by ``attribute_query``, relative to the
    summed record; in property contexts ``["&", {"attribute_query": [field]}]``
    sums a field of the relation record instead. Missing and non-finite
    values count as 0.
    """

    kind = "Summation"

    def configure(self):
        self.field_path = query_path(self.args.attribute_query)

    def default_item_query(self):
        return list(self.args.attribute_query)

    async def item_value(self, item, data_deps):
        return finite_number(read_path(item, self.field_path))


class GlobalSummationHandle(SummationMixin, GlobalAggregateHandle):
    pass


class PropertySummationHandle(SummationMixin, PropertyAggregateHandle):
    pass
