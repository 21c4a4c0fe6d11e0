"""Built-in segment templates.

Date thresholds use relative values so a segment created from a template
keeps meaning "the last 30 days" instead of freezing the creation date.
"""

from dataclasses import dataclass

from mailflow.models.segment import Condition, LogicalOperator


@dataclass(frozen=True)
class SegmentTemplate:
    """Named, reusable condition set."""

    name: str
    conditions: tuple[Condition, ...]
    logical_operator: LogicalOperator = LogicalOperator.AND

    @property
    def display_name(self) -> str:
        return self.name.replace("_", " ").title()


def _c(field: str, operator: str, value: object = None) -> Condition:
    return Condition(field=field, operator=operator, value=value)


SEGMENT_TEMPLATES: dict[str, SegmentTemplate] = {
    template.name: template
    for template in (
        SegmentTemplate(
            name="engaged_subscribers",
            conditions=(
                _c("email_opens", "greater_than", 5),
                _c("last_opened", "greater_than", "now-30d"),
            ),
        ),
        SegmentTemplate(
            name="inactive_subscribers",
            conditions=(
                _c("last_active_at", "less_than", "now-60d"),
                _c("last_active_at", "is_null"),
            ),
            logical_operator=LogicalOperator.OR,
        ),
        SegmentTemplate(
            name="high_value_customers",
            conditions=(
                _c("total_spent", "greater_than", 500),
                _c("purchase_count", "greater_than", 3),
            ),
        ),
        SegmentTemplate(
            name="recent_subscribers",
            conditions=(_c("subscribed_at", "greater_than", "now-7d"),),
        ),
        SegmentTemplate(
            name="cart_abandoners",
            conditions=(_c("cart_abandonment_count", "greater_than", 0),),
        ),
        SegmentTemplate(
            name="never_purchased",
            conditions=(
                _c("purchase_count", "equals", 0),
                _c("purchase_count", "is_null"),
            ),
            logical_operator=LogicalOperator.OR,
        ),
    )
}
