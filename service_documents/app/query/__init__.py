"""
Query option parsing for list/count/distinct requests.
"""

from .options import (
    FilterPredicate,
    PredicateOperator,
    QuerySpec,
    collect_params,
    parse_query_options,
)

__all__ = [
    "FilterPredicate",
    "PredicateOperator",
    "QuerySpec",
    "collect_params",
    "parse_query_options",
]
