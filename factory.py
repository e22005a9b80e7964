"""Generic CRUD handlers shared by every resource.

Reads, updates and deletes always go through the resource's scopes, so a
hidden record (secret tour, inactive user) behaves exactly like a missing
one. Update and delete run the resource hooks around the store operation
with an explicit ``MutationContext``.
"""

from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import pydantic
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import to_object_id
from errors import NotFound, ValidationError
from query import QueryShape
from ratings import MutationContext
from resources import Populate, Resource


# Helpers

def merge_filter(base: Dict[str, Any], condition: Dict[str, Any]) -> Dict[str, Any]:
    if not condition:
        return dict(base)
    if not base:
        return dict(condition)
    if set(base) & set(condition):
        return {"$and": [base, condition]}
    return {**base, **condition}


def scoped_filter(resource: Resource, query: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    result = dict(query or {})
    for scope in resource.scopes:
        result = merge_filter(result, scope())
    return result


def projection_for(resource: Resource, requested: Optional[Dict[str, int]] = None, keep: Iterable[str] = ()) -> Optional[Dict[str, int]]:
    hidden = set(resource.hidden)
    if requested and any(v for v in requested.values()):
        included = {k: 1 for k, v in requested.items() if v and k not in hidden}
        included.update({k: 1 for k in keep})
        return included
    excluded = hidden | {k for k, v in (requested or {}).items() if not v}
    return {k: 0 for k in excluded - set(keep)} or None


def validate(schema, body: Any, partial: bool = False) -> Dict[str, Any]:
    try:
        model = schema.model_validate(body)
    except pydantic.ValidationError as exc:
        messages = []
        for err in exc.errors():
            loc = ".".join(str(p) for p in err["loc"])
            messages.append(f"{loc}: {err['msg']}" if loc else err["msg"])
        raise ValidationError("Invalid input data. " + ". ".join(messages))
    if partial:
        return model.model_dump(exclude_unset=True)
    return model.model_dump(exclude_none=True)


def duplicate_error(exc: DuplicateKeyError) -> ValidationError:
    key_value = (exc.details or {}).get("keyValue") or {}
    fields = ", ".join(f"{k}: {v}" for k, v in key_value.items())
    suffix = f" ({fields})" if fields else ""
    return ValidationError(f"Duplicate field value{suffix}. Please use another value!")


def _ids(value: Any) -> List[Any]:
    if value is None:
        return []
    return list(value) if isinstance(value, list) else [value]


def populate(database: Database, docs: List[Dict[str, Any]], spec: Populate) -> None:
    if spec.foreign_field:
        owner_ids = [d["_id"] for d in docs if "_id" in d]
        related = find(
            database,
            spec.target,
            {spec.foreign_field: {"$in": owner_ids}},
            projection=spec.projection,
            keep=(spec.foreign_field,),
        )
        grouped: Dict[Any, List[Dict[str, Any]]] = {}
        for item in related:
            grouped.setdefault(item[spec.foreign_field], []).append(item)
        for d in docs:
            d[spec.path] = grouped.get(d.get("_id"), [])
        return

    wanted = {i for d in docs if spec.path in d for i in _ids(d[spec.path])}
    if not wanted:
        return
    found = {
        item["_id"]: item
        for item in find(database, spec.target, {"_id": {"$in": list(wanted)}}, projection=spec.projection)
    }
    for d in docs:
        if spec.path not in d:
            continue
        if isinstance(d[spec.path], list):
            d[spec.path] = [found[i] for i in d[spec.path] if i in found]
        else:
            d[spec.path] = found.get(d[spec.path])


def present(database: Database, resource: Resource, docs: List[Dict[str, Any]], extra: Sequence[Populate] = ()) -> List[Dict[str, Any]]:
    for spec in tuple(resource.populate) + tuple(extra):
        populate(database, docs, spec)
    if resource.derive:
        docs = [resource.derive(d) for d in docs]
    return docs


def strip_hidden(resource: Resource, doc: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in doc.items() if k not in resource.hidden}


# Reads

def find(
    database: Database,
    resource: Resource,
    query: Optional[Dict[str, Any]] = None,
    projection: Optional[Dict[str, int]] = None,
    sort: Optional[List[Tuple[str, int]]] = None,
    skip: int = 0,
    limit: int = 0,
    keep: Iterable[str] = (),
) -> List[Dict[str, Any]]:
    cursor = database[resource.collection].find(
        scoped_filter(resource, query), projection_for(resource, projection, keep)
    )
    if sort:
        cursor = cursor.sort(sort)
    if skip:
        cursor = cursor.skip(skip)
    if limit:
        cursor = cursor.limit(limit)
    return present(database, resource, list(cursor))


def find_one_raw(database: Database, resource: Resource, query: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Scoped lookup returning the stored document, hidden fields included."""
    return database[resource.collection].find_one(scoped_filter(resource, query))


def list_all(
    database: Database,
    resource: Resource,
    shape: Optional[QueryShape] = None,
    base_filter: Optional[Dict[str, Any]] = None,
) -> Tuple[List[Dict[str, Any]], int]:
    shape = shape or QueryShape()
    query = merge_filter(base_filter or {}, shape.filter)
    total = database[resource.collection].count_documents(scoped_filter(resource, query))
    cursor = database[resource.collection].find(
        scoped_filter(resource, query), shape.projection(resource.hidden)
    )
    if shape.sort:
        cursor = cursor.sort(shape.sort)
    docs = list(cursor.skip(shape.skip).limit(shape.limit))
    return present(database, resource, docs), total


def get_one(database: Database, resource: Resource, id: Any, populate: Sequence[Populate] = ()) -> Dict[str, Any]:
    oid = to_object_id(id)
    if oid is None:
        raise NotFound(resource.not_found_message)
    doc = database[resource.collection].find_one(
        scoped_filter(resource, {"_id": oid}), projection_for(resource)
    )
    if doc is None:
        raise NotFound(resource.not_found_message)
    return present(database, resource, [doc], populate)[0]


# Writes

def create_one(database: Database, resource: Resource, body: Any) -> Dict[str, Any]:
    data = validate(resource.create_schema, body)
    if resource.prepare:
        data = resource.prepare(database, data, True)
    try:
        inserted = database[resource.collection].insert_one(data)
    except DuplicateKeyError as exc:
        raise duplicate_error(exc)
    data["_id"] = inserted.inserted_id
    if resource.hooks:
        resource.hooks.after_create(database, data)
    doc = strip_hidden(resource, data)
    return resource.derive(doc) if resource.derive else doc


def update_one(database: Database, resource: Resource, id: Any, body: Any) -> Dict[str, Any]:
    oid = to_object_id(id)
    if oid is None:
        raise NotFound(resource.not_found_message)
    changes = validate(resource.update_schema, body, partial=True)
    if resource.prepare:
        changes = resource.prepare(database, changes, False)

    ctx = MutationContext(operation="update", filter=scoped_filter(resource, {"_id": oid}))
    if resource.hooks:
        resource.hooks.before_mutation(database, ctx)
    collection = database[resource.collection]
    try:
        if changes:
            ctx.result = collection.find_one_and_update(
                ctx.filter, {"$set": changes}, return_document=ReturnDocument.AFTER
            )
        else:
            ctx.result = collection.find_one(ctx.filter)
    except DuplicateKeyError as exc:
        raise duplicate_error(exc)
    if ctx.result is None:
        raise NotFound(resource.not_found_message)
    if resource.hooks:
        resource.hooks.after_mutation(database, ctx)
    return present(database, resource, [strip_hidden(resource, ctx.result)])[0]


def delete_one(database: Database, resource: Resource, id: Any) -> None:
    oid = to_object_id(id)
    if oid is None:
        raise NotFound(resource.not_found_message)

    ctx = MutationContext(operation="delete", filter=scoped_filter(resource, {"_id": oid}))
    if resource.hooks:
        resource.hooks.before_mutation(database, ctx)
    ctx.result = database[resource.collection].find_one_and_delete(ctx.filter)
    if ctx.result is None:
        raise NotFound(resource.not_found_message)
    if resource.hooks:
        resource.hooks.after_mutation(database, ctx)
