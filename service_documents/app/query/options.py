"""
Query option parsing for list, count and distinct requests.

Request parameters are parsed once into a ``QuerySpec`` holding typed filter
predicates, which then render the MongoDB filter, sort and projection.

    ?page=2&limit=5&sort=price:desc,name&fields=name,price&price=gte:10&tags=a,b
"""

import math
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from shared.errors import InvalidArgumentError


RESERVED_PARAMS = ("page", "limit", "sort", "fields")
MAX_LIMIT = 100
DEFAULT_LIMIT = 10

ParamValue = Union[str, List[str]]

_LEADING_INT = re.compile(r"^\s*([+-]?\d+)")


class PredicateOperator(str, Enum):
    """Filter predicate kinds."""
    EQUALS = "eq"
    IN = "in"
    GTE = "gte"
    LTE = "lte"
    GT = "gt"
    LT = "lt"
    NE = "ne"
    REGEX = "regex"


NUMERIC_OPERATORS = frozenset({
    PredicateOperator.GTE,
    PredicateOperator.LTE,
    PredicateOperator.GT,
    PredicateOperator.LT,
})

# Longer prefixes first so "gte:" is not read as "gt:" + "e..."
_OPERATOR_PREFIXES: Tuple[Tuple[str, PredicateOperator], ...] = (
    ("gte:", PredicateOperator.GTE),
    ("lte:", PredicateOperator.LTE),
    ("gt:", PredicateOperator.GT),
    ("lt:", PredicateOperator.LT),
    ("ne:", PredicateOperator.NE),
    ("regex:", PredicateOperator.REGEX),
)


@dataclass(frozen=True)
class FilterPredicate:
    """A single field predicate."""
    field: str
    operator: PredicateOperator
    value: Any

    def to_mongo(self) -> Any:
        """Render the predicate as a MongoDB field condition."""
        if self.operator is PredicateOperator.EQUALS:
            return self.value
        if self.operator is PredicateOperator.IN:
            return {"$in": list(self.value)}
        if self.operator is PredicateOperator.REGEX:
            return {"$regex": self.value, "$options": "i"}
        return {f"${self.operator.value}": self.value}


@dataclass
class QuerySpec:
    """Parsed filter, sort, pagination and projection for one request."""
    filter: List[FilterPredicate] = field(default_factory=list)
    sort: Dict[str, int] = field(default_factory=dict)
    skip: int = 0
    limit: int = 0
    projection: List[str] = field(default_factory=list)

    def mongo_filter(self) -> Dict[str, Any]:
        return {predicate.field: predicate.to_mongo() for predicate in self.filter}

    def mongo_sort(self) -> List[Tuple[str, int]]:
        return list(self.sort.items())

    def mongo_projection(self) -> Optional[Dict[str, int]]:
        if not self.projection:
            return None
        return {name: 1 for name in self.projection}


def collect_params(items: Iterable[Tuple[str, str]]) -> Dict[str, ParamValue]:
    """Fold multi-valued query items into a mapping; repeated keys become lists."""
    params: Dict[str, ParamValue] = {}
    for key, value in items:
        if key not in params:
            params[key] = value
            continue
        existing = params[key]
        if isinstance(existing, list):
            existing.append(value)
        else:
            params[key] = [existing, value]
    return params


def parse_query_options(params: Mapping[str, Any]) -> QuerySpec:
    """Parse request parameters into a ``QuerySpec``.

    Raises:
        InvalidArgumentError: a range operator carries a non-numeric value.
    """
    spec = QuerySpec()

    # Pagination
    page_raw = _scalar(params.get("page"))
    limit_raw = _scalar(params.get("limit"))
    if limit_raw:
        limit = min(MAX_LIMIT, max(1, _parse_int(limit_raw, DEFAULT_LIMIT)))
        spec.limit = limit
        if page_raw:
            page = max(1, _parse_int(page_raw, 1))
            spec.skip = (page - 1) * limit

    # Sorting: field[:asc|desc], comma separated
    sort_raw = _scalar(params.get("sort"))
    if sort_raw:
        for part in sort_raw.split(","):
            name, _, order = part.partition(":")
            name = name.strip()
            if name:
                spec.sort[name] = -1 if order.strip().lower() == "desc" else 1

    # Projection
    fields_raw = _scalar(params.get("fields"))
    if fields_raw:
        for name in fields_raw.split(","):
            name = name.strip()
            if name and name not in spec.projection:
                spec.projection.append(name)

    for key, value in params.items():
        if key in RESERVED_PARAMS or value is None:
            continue
        spec.filter.append(parse_predicate(key, value))

    return spec


def parse_predicate(field_name: str, value: Any) -> FilterPredicate:
    """Map one filter parameter to a typed predicate."""
    if isinstance(value, (list, tuple)):
        return FilterPredicate(field_name, PredicateOperator.IN, [str(v).strip() for v in value])

    if not isinstance(value, str):
        return FilterPredicate(field_name, PredicateOperator.EQUALS, value)

    for prefix, operator in _OPERATOR_PREFIXES:
        if value.startswith(prefix):
            operand = value[len(prefix):]
            if operator in NUMERIC_OPERATORS:
                return FilterPredicate(field_name, operator, _parse_number(field_name, value, operand))
            return FilterPredicate(field_name, operator, operand)

    if "," in value:
        return FilterPredicate(field_name, PredicateOperator.IN, [v.strip() for v in value.split(",")])

    return FilterPredicate(field_name, PredicateOperator.EQUALS, value)


def _scalar(value: Any) -> Optional[str]:
    if isinstance(value, list):
        value = value[-1] if value else None
    if value is None:
        return None
    return str(value)


def _parse_int(raw: str, default: int) -> int:
    match = _LEADING_INT.match(raw)
    if not match:
        return default
    parsed = int(match.group(1))
    # "0" and negatives are clamped by the caller; only non-numeric text falls back
    return parsed if parsed != 0 else default


def _parse_number(field_name: str, raw: str, operand: str) -> Union[int, float]:
    text = operand.strip()
    try:
        return int(text)
    except ValueError:
        pass
    try:
        number = float(text)
    except ValueError:
        number = math.nan
    if not math.isfinite(number):
        raise InvalidArgumentError(
            f"Invalid numeric value for filter '{field_name}'",
            details={"field": field_name, "value": raw},
        )
    return number
