"""
Translate request query parameters into a MongoDB read specification.

    GET /tours?difficulty=easy&price[gte]=100&sort=-price,name&page=2&limit=5

becomes filter ``{"difficulty": "easy", "price": {"$gte": 100.0}}``, sort
``[("price", -1), ("name", 1)]``, skip 5, limit 5. Nothing is executed here;
the resulting QuerySpec is consumed by ``Model.find``.
"""
import logging
import os
import re
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from pydantic import BaseModel, Field

from errors import BadRequest

logger = logging.getLogger(__name__)

RESERVED_PARAMS = ("page", "sort", "limit", "fields")
OPERATORS = ("gte", "gt", "lte", "lt")
VERSION_KEY = "__v"

DEFAULT_SORT = "-created_at"
DEFAULT_PAGE = 1
DEFAULT_LIMIT = 100
MAX_PAGE_SIZE = int(os.getenv("MAX_PAGE_SIZE", "1000"))
# keeps skip inside a BSON int64
MAX_SKIP = 2 ** 62

_BRACKET_RE = re.compile(r"^([^\[\]]+)\[([^\[\]]+)\]$")
_SPLIT_RE = re.compile(r"[,\s]+")


class QuerySpec(BaseModel):
    filter: Dict[str, Any] = Field(default_factory=dict)
    sort: List[Tuple[str, int]] = Field(default_factory=list)
    projection: Optional[Dict[str, int]] = None
    skip: int = 0
    limit: int = DEFAULT_LIMIT


def parse_query_items(items: Iterable[Tuple[str, str]]) -> Dict[str, Any]:
    """Fold raw query string pairs into the nested parameter mapping.

    ``price[gte]=100`` becomes ``{"price": {"gte": "100"}}`` and a repeated
    plain key becomes a list of its values.
    """
    params: Dict[str, Any] = {}
    for key, value in items:
        match = _BRACKET_RE.match(key)
        if match:
            field, token = match.groups()
            nested = params.get(field)
            if not isinstance(nested, dict):
                nested = {}
                params[field] = nested
            nested[token] = value
        elif key in params and not isinstance(params[key], dict):
            prev = params[key]
            params[key] = (prev if isinstance(prev, list) else [prev]) + [value]
        else:
            params[key] = value
    return params


def _last(value: Any) -> Any:
    if isinstance(value, list):
        return value[-1] if value else None
    return value


def _positive_int(value: Any, default: int) -> int:
    try:
        number = int(str(value).strip())
    except (TypeError, ValueError):
        return default
    return number if number >= 1 else default


def _check_key(key: str) -> None:
    if "$" in key:
        raise BadRequest(f"Invalid query parameter: {key}")


class APIFeatures:
    """Chainable builder: filter() -> sort() -> limit_fields() -> paginate()."""

    def __init__(self, query_params: Mapping[str, Any], model=None, base_filter: Optional[Dict[str, Any]] = None):
        self.query_params = query_params or {}
        self.model = model
        self.base_filter = dict(base_filter or {})
        self.spec = QuerySpec(filter=dict(self.base_filter))

    def _allowed(self, path: str) -> bool:
        if self.model is None:
            return True
        return self.model.is_queryable(path)

    def _coerce(self, path: str, raw: Any) -> Any:
        if self.model is None:
            return raw
        return self.model.coerce(path, raw)

    def filter(self) -> "APIFeatures":
        predicates: Dict[str, Any] = {}
        for key, value in self.query_params.items():
            if key in RESERVED_PARAMS:
                continue
            _check_key(key)
            if isinstance(value, dict):
                for token, raw in value.items():
                    _check_key(token)
                    if token in OPERATORS:
                        if not self._allowed(key):
                            continue
                        cond = predicates.get(key)
                        if not isinstance(cond, dict):
                            cond = {}
                            predicates[key] = cond
                        cond[f"${token}"] = self._coerce(key, _last(raw))
                    else:
                        path = f"{key}.{token}"
                        if self._allowed(path):
                            predicates[path] = self._equality(path, raw)
            elif self._allowed(key):
                predicates[key] = self._equality(key, value)
            else:
                logger.debug("Ignoring filter on unknown field %s", key)

        if predicates and self.base_filter:
            self.spec.filter = {"$and": [self.base_filter, predicates]}
        elif predicates:
            self.spec.filter = predicates
        return self

    def _equality(self, path: str, raw: Any) -> Any:
        if isinstance(raw, list):
            return {"$in": [self._coerce(path, v) for v in raw]}
        return self._coerce(path, raw)

    def sort(self) -> "APIFeatures":
        sort_by: List[Tuple[str, int]] = []
        raw = _last(self.query_params.get("sort"))
        if raw:
            for token in _SPLIT_RE.split(str(raw)):
                direction = -1 if token.startswith("-") else 1
                field = token.lstrip("-+")
                if not field:
                    continue
                _check_key(field)
                if self._allowed(field):
                    sort_by.append((field, direction))
        if not sort_by:
            sort_by = [(DEFAULT_SORT.lstrip("-"), -1)]
        # ties fall back to _id so pages stay disjoint
        if all(field != "_id" for field, _ in sort_by):
            sort_by.append(("_id", 1))
        self.spec.sort = sort_by
        return self

    def limit_fields(self) -> "APIFeatures":
        include: List[str] = []
        exclude: List[str] = []
        raw = _last(self.query_params.get("fields"))
        if raw:
            for token in _SPLIT_RE.split(str(raw)):
                field = token.lstrip("-")
                if not field:
                    continue
                _check_key(field)
                if not self._allowed(field):
                    continue
                (exclude if token.startswith("-") else include).append(field)
        if include:
            self.spec.projection = {field: 1 for field in include}
        else:
            projection = {field: 0 for field in exclude}
            projection[VERSION_KEY] = 0
            self.spec.projection = projection
        return self

    def paginate(self) -> "APIFeatures":
        page = _positive_int(_last(self.query_params.get("page")), DEFAULT_PAGE)
        limit = min(_positive_int(_last(self.query_params.get("limit")), DEFAULT_LIMIT), MAX_PAGE_SIZE)
        self.spec.skip = min((page - 1) * limit, MAX_SKIP)
        self.spec.limit = limit
        return self


def build_query_spec(query_params: Mapping[str, Any], model=None, base_filter: Optional[Dict[str, Any]] = None) -> QuerySpec:
    features = APIFeatures(query_params, model, base_filter).filter().sort().limit_fields().paginate()
    logger.debug("Built query spec %s", features.spec)
    return features.spec
