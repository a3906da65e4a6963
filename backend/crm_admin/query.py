from __future__ import annotations

from enum import Enum
from typing import Any, Literal, Optional

from google.cloud import firestore
from google.cloud.firestore_v1.base_query import FieldFilter
from pydantic import BaseModel, Field

from .cache import canonical_json

# Firestore caps the value list of an `in` filter
IN_QUERY_LIMIT = 30


def chunked(items: list, size: int = IN_QUERY_LIMIT) -> list[list]:
    return [items[i:i + size] for i in range(0, len(items), size)]


class FilterOperator(str, Enum):
    EQ = "=="
    NE = "!="
    LT = "<"
    LTE = "<="
    GT = ">"
    GTE = ">="
    IN = "in"
    NOT_IN = "not-in"
    ARRAY_CONTAINS = "array-contains"
    ARRAY_CONTAINS_ANY = "array-contains-any"


# panel operator -> Firestore python SDK operator string
FIRESTORE_OPS: dict[FilterOperator, str] = {
    FilterOperator.EQ: "==",
    FilterOperator.NE: "!=",
    FilterOperator.LT: "<",
    FilterOperator.LTE: "<=",
    FilterOperator.GT: ">",
    FilterOperator.GTE: ">=",
    FilterOperator.IN: "in",
    FilterOperator.NOT_IN: "not-in",
    FilterOperator.ARRAY_CONTAINS: "array_contains",
    FilterOperator.ARRAY_CONTAINS_ANY: "array_contains_any",
}


class Filter(BaseModel):
    field: str
    operator: FilterOperator = FilterOperator.EQ
    value: Any = None


class OrderBy(BaseModel):
    field: str
    direction: Literal["asc", "desc"] = "asc"


class QueryOptions(BaseModel):
    filters: list[Filter] = Field(default_factory=list)
    order_by: list[OrderBy] = Field(default_factory=list)
    limit: Optional[int] = None
    start_after: Optional[dict[str, Any]] = None
    start_at: Optional[dict[str, Any]] = None

    # control flags, not part of the query signature
    cache: bool = True
    realtime: bool = False
    retry: bool = True

    def signature(self) -> str:
        return canonical_json(
            self.model_dump(mode="json", exclude={"cache", "realtime", "retry"})
        )

    @property
    def use_cache(self) -> bool:
        return self.cache and not self.realtime


class WriteOptions(BaseModel):
    doc_id: Optional[str] = None
    expected_version: Optional[int] = None
    soft_delete: bool = False
    retry: bool = True


class BatchOperation(BaseModel):
    type: Literal["create", "set", "update", "delete"]
    collection: str
    doc_id: str
    data: dict[str, Any] = Field(default_factory=dict)


class AggregationType(str, Enum):
    COUNT = "count"
    SUM = "sum"
    AVG = "avg"
    MIN = "min"
    MAX = "max"


class Aggregation(BaseModel):
    type: AggregationType
    field: Optional[str] = None


def _numbers(docs: list[dict], field: str | None) -> list[float]:
    return [doc[field] for doc in docs
            if field and isinstance(doc.get(field), (int, float)) and not isinstance(doc.get(field), bool)]


def _avg(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0


AGGREGATORS = {
    AggregationType.COUNT: lambda docs, field: len(docs),
    AggregationType.SUM: lambda docs, field: sum(_numbers(docs, field)),
    AggregationType.AVG: lambda docs, field: _avg(_numbers(docs, field)),
    AggregationType.MIN: lambda docs, field: min(_numbers(docs, field), default=None),
    AggregationType.MAX: lambda docs, field: max(_numbers(docs, field), default=None),
}


def apply_filters(query, options: QueryOptions):
    for f in options.filters:
        query = query.where(filter=FieldFilter(f.field, FIRESTORE_OPS[f.operator], f.value))
    return query


def apply_sort(query, options: QueryOptions):
    for sort in options.order_by:
        direction = firestore.Query.DESCENDING if sort.direction == "desc" else firestore.Query.ASCENDING
        query = query.order_by(sort.field, direction=direction)
    return query


def apply_pagination(query, options: QueryOptions):
    if options.limit:
        query = query.limit(options.limit)
    if options.start_after:
        query = query.start_after(options.start_after)
    if options.start_at:
        query = query.start_at(options.start_at)
    return query


def build_query(collection_ref, options: QueryOptions, *, paginate: bool = True):
    query = apply_sort(apply_filters(collection_ref, options), options)
    return apply_pagination(query, options) if paginate else query
