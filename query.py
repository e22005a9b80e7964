"""Query-string shaping for list endpoints.

Turns ``?difficulty=easy&price[lt]=1500&sort=-price,name&fields=name,price&page=2&limit=10``
into a MongoDB filter, sort spec, projection and skip/limit.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from pymongo import ASCENDING, DESCENDING

from errors import BadRequest

RESERVED = ("page", "sort", "limit", "fields")
OPERATORS = ("gte", "gt", "lte", "lt", "ne")
DEFAULT_LIMIT = 100
MAX_LIMIT = 1000

_OPERATOR_KEY = re.compile(r"^(?P<field>[A-Za-z0-9_.]+)\[(?P<op>[a-z]+)\]$")
_FIELD = re.compile(r"^[A-Za-z0-9_]+(\.[A-Za-z0-9_]+)*$")
_NUMBER = re.compile(r"^-?\d+(\.\d+)?$")


def coerce(value: str) -> Any:
    if _NUMBER.match(value):
        return float(value) if "." in value else int(value)
    if value in ("true", "false"):
        return value == "true"
    return value


@dataclass
class QueryShape:
    filter: Dict[str, Any] = field(default_factory=dict)
    sort: List[Tuple[str, int]] = field(default_factory=lambda: [("createdAt", DESCENDING)])
    fields: Optional[List[str]] = None
    page: int = 1
    limit: int = DEFAULT_LIMIT

    @property
    def skip(self) -> int:
        return (self.page - 1) * self.limit

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> "QueryShape":
        shape = cls()
        for key, value in _items(params):
            if key in RESERVED:
                continue
            match = _OPERATOR_KEY.match(key)
            if match:
                op = match.group("op")
                if op not in OPERATORS:
                    raise BadRequest(f"Unsupported filter operator: {op}")
                shape.filter.setdefault(match.group("field"), {})["$" + op] = coerce(value)
            else:
                shape.filter[_field_name(key)] = coerce(value)

        sort = params.get("sort")
        if sort:
            shape.sort = parse_sort(sort)

        fields = params.get("fields")
        if fields:
            shape.fields = [f.strip() for f in fields.split(",") if f.strip()]
            for f in shape.fields:
                _field_name(f.lstrip("-"))

        shape.page = _positive_int(params.get("page"), 1, "page")
        shape.limit = min(_positive_int(params.get("limit"), DEFAULT_LIMIT, "limit"), MAX_LIMIT)
        return shape

    def projection(self, hidden: Iterable[str] = ()) -> Dict[str, int]:
        """Inclusion projection when fields were requested, exclusion otherwise.

        Hidden fields are never returned, even when asked for by name.
        """
        hidden = set(hidden)
        if self.fields:
            selected = [f for f in self.fields if not f.startswith("-")]
            if selected:
                return {f: 1 for f in selected if f not in hidden} or {"_id": 1}
            excluded = {f[1:] for f in self.fields} | hidden
            return {f: 0 for f in excluded}
        return {f: 0 for f in hidden | {"__v"}}


def parse_sort(value: str) -> List[Tuple[str, int]]:
    spec = []
    for part in value.split(","):
        part = part.strip()
        if not part:
            continue
        if part.startswith("-"):
            spec.append((_field_name(part[1:]), DESCENDING))
        else:
            spec.append((_field_name(part), ASCENDING))
    return spec


def _items(params: Mapping[str, Any]):
    # Starlette's QueryParams keeps repeated keys; plain dicts do not.
    if hasattr(params, "multi_items"):
        return params.multi_items()
    return params.items()


def _field_name(key: str) -> str:
    # Only plain field paths reach the store; operators come from the [op] suffix.
    if not _FIELD.match(key):
        raise BadRequest(f"Invalid filter field: {key}")
    return key


def _positive_int(raw: Any, default: int, name: str) -> int:
    if raw in (None, ""):
        return default
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise BadRequest(f"'{name}' must be a positive integer")
    if value < 1:
        raise BadRequest(f"'{name}' must be a positive integer")
    return value
