"""Typed, versioned catalog of fields segment conditions may reference."""

from dataclasses import dataclass, field
from enum import Enum

from mailflow.engine.conditions import NULL_CHECK_OPERATORS, Operator

SUBSCRIBER_TABLE = "email_subscribers"
ANALYTICS_RELATION = "email_analytics"


class FieldType(str, Enum):
    """Declared field types."""

    STRING = "string"
    NUMBER = "number"
    DATE = "date"
    BOOLEAN = "boolean"
    LIST = "list"
    MAP = "map"


_COMPARISON = frozenset({
    Operator.EQUALS,
    Operator.NOT_EQUALS,
    Operator.GREATER_THAN,
    Operator.LESS_THAN,
})

_MEMBERSHIP = frozenset({Operator.CONTAINS, Operator.NOT_CONTAINS})

OPERATORS_BY_TYPE: dict[FieldType, frozenset[Operator]] = {
    FieldType.STRING: frozenset({
        Operator.EQUALS,
        Operator.NOT_EQUALS,
        Operator.CONTAINS,
        Operator.NOT_CONTAINS,
        Operator.STARTS_WITH,
        Operator.ENDS_WITH,
    }) | NULL_CHECK_OPERATORS,
    FieldType.NUMBER: _COMPARISON | NULL_CHECK_OPERATORS,
    FieldType.DATE: _COMPARISON | NULL_CHECK_OPERATORS,
    FieldType.BOOLEAN: frozenset({Operator.EQUALS, Operator.NOT_EQUALS}) | NULL_CHECK_OPERATORS,
    FieldType.LIST: _MEMBERSHIP | NULL_CHECK_OPERATORS,
    FieldType.MAP: _MEMBERSHIP | NULL_CHECK_OPERATORS,
}


@dataclass(frozen=True)
class DirectSource:
    """Field read straight from a column of the subscriber relation."""

    column: str
    table: str = SUBSCRIBER_TABLE


@dataclass(frozen=True)
class AggregateSource:
    """Field aggregated per subscriber from the message event history."""

    function: str  # "count" or "max"
    event: str
    column: str = "timestamp"
    relation: str = ANALYTICS_RELATION


@dataclass(frozen=True)
class FieldDefinition:
    """One catalog entry."""

    id: str
    name: str
    type: FieldType
    source: DirectSource | AggregateSource
    description: str = ""
    options: tuple[str, ...] = ()

    @property
    def is_aggregate(self) -> bool:
        return isinstance(self.source, AggregateSource)

    @property
    def record_path(self) -> str:
        """Dotted path of the value on an in-memory subscriber record."""
        if isinstance(self.source, AggregateSource):
            return f"analytics.{self.id}"
        return self.source.column

    def allows(self, operator: Operator) -> bool:
        return operator in OPERATORS_BY_TYPE[self.type]


@dataclass(frozen=True)
class FieldCatalog:
    """Fixed registry of fields; the version identifies compiled output."""

    version: str
    fields: tuple[FieldDefinition, ...]
    _by_id: dict[str, FieldDefinition] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "_by_id", {f.id: f for f in self.fields})

    def get(self, field_id: str) -> FieldDefinition | None:
        return self._by_id.get(field_id)

    def __contains__(self, field_id: object) -> bool:
        return field_id in self._by_id

    def supported_operators(self, field_type: FieldType) -> list[Operator]:
        """Operators allowed for a type, in declaration order."""
        allowed = OPERATORS_BY_TYPE[FieldType(field_type)]
        return [op for op in Operator if op in allowed]


def _direct(field_id: str, name: str, field_type: FieldType, description: str = "", **kwargs) -> FieldDefinition:
    return FieldDefinition(
        id=field_id,
        name=name,
        type=field_type,
        source=DirectSource(column=field_id),
        description=description,
        **kwargs,
    )


def _aggregate(field_id: str, name: str, field_type: FieldType, function: str, event: str, description: str) -> FieldDefinition:
    return FieldDefinition(
        id=field_id,
        name=name,
        type=field_type,
        source=AggregateSource(function=function, event=event),
        description=description,
    )


DEFAULT_CATALOG = FieldCatalog(
    version="2024.06",
    fields=(
        # Subscriber fields
        _direct("email", "Email Address", FieldType.STRING, "Subscriber email address"),
        _direct("first_name", "First Name", FieldType.STRING, "Subscriber first name"),
        _direct("last_name", "Last Name", FieldType.STRING, "Subscriber last name"),
        _direct(
            "status",
            "Status",
            FieldType.STRING,
            "Subscription status",
            options=("active", "unsubscribed", "bounced", "complained", "pending"),
        ),
        _direct("source", "Source", FieldType.STRING, "How the subscriber signed up"),
        _direct("subscribed_at", "Subscription Date", FieldType.DATE, "When the subscriber signed up"),
        _direct("last_active_at", "Last Active", FieldType.DATE, "Last recorded activity"),
        _direct("bounce_count", "Bounce Count", FieldType.NUMBER, "Number of bounced emails"),
        _direct("tags", "Tags", FieldType.LIST, "Subscriber tags"),
        _direct("lists", "Lists", FieldType.LIST, "List memberships"),
        # Analytics fields
        _aggregate("email_opens", "Email Opens", FieldType.NUMBER, "count", "opened", "Total number of email opens"),
        _aggregate("email_clicks", "Email Clicks", FieldType.NUMBER, "count", "clicked", "Total number of email clicks"),
        _aggregate("last_opened", "Last Email Opened", FieldType.DATE, "max", "opened", "Date of last email open"),
        _aggregate("last_clicked", "Last Email Clicked", FieldType.DATE, "max", "clicked", "Date of last email click"),
        # Geographic fields
        _direct("country", "Country", FieldType.STRING, "Subscriber country"),
        _direct("region", "Region", FieldType.STRING, "Subscriber region or state"),
        _direct("city", "City", FieldType.STRING, "Subscriber city"),
        # Ecommerce fields
        _direct("product_views", "Product Views", FieldType.NUMBER, "Number of product views"),
        _direct("cart_abandonment_count", "Cart Abandonments", FieldType.NUMBER, "Number of abandoned carts"),
        _direct("purchase_count", "Purchase Count", FieldType.NUMBER, "Number of purchases made"),
        _direct("total_spent", "Total Spent", FieldType.NUMBER, "Total amount spent"),
        _direct("average_order_value", "Average Order Value", FieldType.NUMBER, "Average order value"),
        _direct("last_purchase_date", "Last Purchase Date", FieldType.DATE, "Date of last purchase"),
        _direct("favorite_category", "Favorite Category", FieldType.STRING, "Most purchased category"),
        _direct(
            "lifecycle_stage",
            "Lifecycle Stage",
            FieldType.STRING,
            "Customer lifecycle stage",
            options=("new", "active", "at_risk", "churned", "vip"),
        ),
        # Custom fields
        _direct("custom_fields", "Custom Fields", FieldType.MAP, "Tenant-defined custom fields"),
    ),
)
