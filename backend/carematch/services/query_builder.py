import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from carematch.services.entity_store import EntityStore
from carematch.services.errors import InvalidQueryError

logger = logging.getLogger(__name__)


TABLE_COLUMNS: Dict[str, Tuple[str, ...]] = {
    "providers": (
        "email",
        "name",
        "experience",
        "location",
        "availability",
        "specializations",
        "rate_expectations",
        "certifications",
        "created_at",
    ),
    "seekers": (
        "email",
        "name",
        "care_needs",
        "location",
        "schedule_requirements",
        "budget",
        "special_requirements",
        "created_at",
    ),
    "matches": (
        "provider_email",
        "seeker_email",
        "status",
        "created_at",
        "updated_at",
    ),
    "skills": (
        "email",
        "skill",
        "created_at",
    ),
}

ALLOWED_TABLES = frozenset(TABLE_COLUMNS)
ALLOWED_COLUMNS = frozenset(column for columns in TABLE_COLUMNS.values() for column in columns)

NULL_OPERATORS = {"IS NULL", "IS NOT NULL"}
LIST_OPERATORS = {"IN", "NOT IN"}
ALLOWED_OPERATORS = {"=", ">", "<", ">=", "<=", "LIKE", "NOT LIKE"} | LIST_OPERATORS | NULL_OPERATORS

MAX_LIMIT = 1000

# SQLite stores integers as signed 64-bit values.
SQLITE_INT_MIN = -(2**63)
SQLITE_INT_MAX = 2**63 - 1


@dataclass
class QueryFilter:
    field: str
    operator: str
    value: Any = None


@dataclass
class DynamicQuery:
    table: str
    fields: List[str] = field(default_factory=list)
    filters: List[QueryFilter] = field(default_factory=list)
    order_by: str = ""
    limit: int = 0

    @classmethod
    def from_arguments(cls, args: Dict[str, Any]) -> "DynamicQuery":
        """Build a query from loosely typed tool arguments; malformed parts are dropped."""
        raw_fields = args.get("fields")
        fields = [item for item in raw_fields if isinstance(item, str)] if isinstance(raw_fields, list) else []

        filters: List[QueryFilter] = []
        raw_filters = args.get("filters")
        if isinstance(raw_filters, list):
            for item in raw_filters:
                if not isinstance(item, dict):
                    continue
                name = item.get("field")
                operator = item.get("operator")
                if not isinstance(name, str) or not isinstance(operator, str):
                    continue
                filters.append(QueryFilter(field=name, operator=operator, value=item.get("value")))

        try:
            limit = int(args.get("limit") or 0)
        except (TypeError, ValueError, OverflowError):
            limit = 0

        order_by = args.get("order_by")
        return cls(
            table=str(args.get("table") or ""),
            fields=fields,
            filters=filters,
            order_by=order_by if isinstance(order_by, str) else "",
            limit=min(max(limit, 0), MAX_LIMIT),
        )


def _normalize_operator(operator: str) -> str:
    return " ".join(operator.upper().split())


def _is_bindable(value: Any) -> bool:
    if value is None or isinstance(value, str):
        return True
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return SQLITE_INT_MIN <= value <= SQLITE_INT_MAX
    if isinstance(value, float):
        return math.isfinite(value)
    return False


def _order_clause(order_by: str, columns: Tuple[str, ...]) -> Optional[str]:
    parts = order_by.split()
    if not parts or len(parts) > 2:
        return None
    column = parts[0]
    direction = parts[1].upper() if len(parts) == 2 else "ASC"
    if column not in columns or direction not in {"ASC", "DESC"}:
        return None
    return f"{column} {direction}"


def build_query(query: DynamicQuery) -> Tuple[str, Tuple[Any, ...]]:
    """Translate ``query`` into a parameterized SELECT.

    Only whitelisted identifiers ever reach the SQL text; every value is bound.
    """
    if query.table not in ALLOWED_TABLES:
        raise InvalidQueryError(f"invalid table name: {query.table}")
    columns = TABLE_COLUMNS[query.table]

    selected = [name for name in query.fields if name in columns]
    select_clause = ", ".join(dict.fromkeys(selected or columns))

    conditions: List[str] = []
    params: List[Any] = []
    for item in query.filters:
        operator = _normalize_operator(item.operator)
        if item.field not in columns or operator not in ALLOWED_OPERATORS:
            logger.info("dropping filter field=%s operator=%s", item.field, item.operator)
            continue
        if operator in NULL_OPERATORS:
            conditions.append(f"{item.field} {operator}")
        elif operator in LIST_OPERATORS:
            values = list(item.value) if isinstance(item.value, (list, tuple)) else [item.value]
            if not values or not all(_is_bindable(value) for value in values):
                logger.info("dropping filter field=%s with unbindable values", item.field)
                continue
            placeholders = ", ".join("?" for _ in values)
            conditions.append(f"{item.field} {operator} ({placeholders})")
            params.extend(values)
        elif not _is_bindable(item.value):
            logger.info("dropping filter field=%s with unbindable value", item.field)
            continue
        else:
            conditions.append(f"{item.field} {operator} ?")
            params.append(item.value)

    sql = f"SELECT {select_clause} FROM {query.table}"
    if conditions:
        sql += " WHERE " + " AND ".join(conditions)
    order_clause = _order_clause(query.order_by, columns) if query.order_by else None
    if order_clause:
        sql += f" ORDER BY {order_clause}"
    if query.limit > 0:
        sql += " LIMIT ?"
        params.append(min(query.limit, MAX_LIMIT))
    return sql, tuple(params)


def execute_dynamic_query(store: EntityStore, query: DynamicQuery) -> List[Dict[str, Any]]:
    try:
        sql, params = build_query(query)
    except InvalidQueryError:
        logger.warning("rejected dynamic query for table=%r", query.table)
        raise
    return store.run_select(sql, params)
