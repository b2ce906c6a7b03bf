"""Any: whether at least one record (or related record) passes ``match``."""

from .aggregate import GlobalAggregateHandle, PropertyAggregateHandle
from .every import EveryMixin


class AnyMixin(EveryMixin):
    kind = "Any"

    def finalize(self, total, size):
        return total > 0


class GlobalAnyHandle(AnyMixin, GlobalAggregateHandle):
    pass


class PropertyAnyHandle(AnyMixin, PropertyAggregateHandle):
    pass
