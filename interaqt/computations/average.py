"""Average: mean of one numeric field, kept as a running sum and size."""

from .aggregate import GlobalAggregateHandle, PropertyAggregateHandle
from .summation import SummationMixin


class AverageMixin(SummationMixin):
    kind = "Average"
    result_is_total = False
    total_state_name = "sum"
    size_state_name = "count"

    def finalize(self, total, size):
        return total / size if size else 0


class GlobalAverageHandle(AverageMixin, GlobalAggregateHandle):
    pass


class PropertyAverageHandle(AverageMixin, PropertyAggregateHandle):
    pass
