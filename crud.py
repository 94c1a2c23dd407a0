"""
Generic CRUD operations over any Model.

Nothing in here knows about tours, reviews or users: entity behaviour comes
from the Model passed in (schema, default filter, hidden and read-only
fields, relations, deletion policy).
"""
import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from pymongo.database import Database

from api_features import VERSION_KEY, build_query_spec
from errors import BadRequest, Conflict, NotFound
from models import Model, get_model

logger = logging.getLogger(__name__)

UPDATE_ATTEMPTS = 3


def not_found(model: Model) -> NotFound:
    return NotFound(f"No {model.name} found with that ID")


def create_one(db: Database, model: Model, payload: Mapping[str, Any]) -> Dict[str, Any]:
    document = model.validate_create(model.clean_payload(dict(payload), creating=True))
    doc = model.create(db, document)
    logger.info("Created %s %s", model.name, doc["_id"])
    return doc


def get_one(db: Database, model: Model, obj_id: Any, populate: Sequence[str] = ()) -> Dict[str, Any]:
    doc = model.find_by_id(db, obj_id, {VERSION_KEY: 0})
    if doc is None:
        raise not_found(model)
    for path in populate:
        populate_path(db, model, doc, path)
    return doc


def get_all(
    db: Database,
    model: Model,
    query_params: Optional[Mapping[str, Any]] = None,
    filter_override: Optional[Dict[str, Any]] = None,
    populate: Sequence[str] = (),
) -> Tuple[List[Dict[str, Any]], int]:
    """Return one page of matching documents and the total number of matches."""
    base_filter = model.scoped(dict(filter_override or {}))
    spec = build_query_spec(query_params or {}, model, base_filter)
    docs = model.find(db, spec)
    total = model.count(db, spec.filter)
    for doc in docs:
        for path in populate:
            populate_path(db, model, doc, path)
    return docs, total


def update_one(db: Database, model: Model, obj_id: Any, payload: Mapping[str, Any]) -> Dict[str, Any]:
    """Partial update validated against the whole resulting document.

    The write only lands if the revision marker is unchanged since the read,
    so cross-field rules never pass against a stale snapshot.
    """
    changes_in = model.clean_payload(dict(payload), creating=False)
    for attempt in range(1, UPDATE_ATTEMPTS + 1):
        current = model.find_by_id(db, obj_id)
        if current is None:
            raise not_found(model)
        merged = {k: v for k, v in current.items() if k not in ("_id", VERSION_KEY)}
        merged.update(changes_in)
        document = model.validate_document(merged)
        changes = {k: v for k, v in document.items() if current.get(k) != v}
        if not changes:
            return current
        updated = model.find_by_id_and_update(db, obj_id, changes, expected_version=current.get(VERSION_KEY))
        if updated is not None:
            logger.info("Updated %s %s fields=%s", model.name, current["_id"], sorted(changes))
            return updated
        logger.warning("Concurrent change on %s %s, retrying (%d/%d)", model.name, current["_id"], attempt, UPDATE_ATTEMPTS)
    raise Conflict(f"The {model.name} was modified concurrently, please retry")


def delete_one(db: Database, model: Model, obj_id: Any) -> Dict[str, Any]:
    """Delete (or deactivate, for soft-deleted models) and return the document."""
    doc = model.find_by_id_and_delete(db, obj_id)
    if doc is None:
        raise not_found(model)
    logger.info("%s %s %s", "Deactivated" if model.soft_delete_field else "Deleted", model.name, doc["_id"])
    return doc


def populate_path(db: Database, model: Model, doc: Dict[str, Any], path: str) -> Dict[str, Any]:
    """Replace a reference on ``doc`` with the referenced documents, in place.

    Targets hidden by their own default filter (inactive users, secret tours)
    are left out, as if they did not exist.
    """
    relation = model.relations.get(path)
    if relation is None:
        raise BadRequest(f"Cannot expand '{path}' on {model.name}")
    target = get_model(relation.model)

    if relation.reverse:
        found = target.where(db, {relation.foreign_field: doc["_id"]}, relation.select)
        for item in found:
            for nested in relation.populate:
                populate_path(db, target, item, nested)
        doc[path] = [target.sanitize(item) for item in found]
        return doc

    if path not in doc:
        return doc
    value = doc[path]
    ids = value if isinstance(value, list) else [value]
    ids = [i for i in ids if i is not None]
    found = target.where(db, {"_id": {"$in": ids}}, relation.select) if ids else []
    for item in found:
        for nested in relation.populate:
            populate_path(db, target, item, nested)
    by_id = {item["_id"]: target.sanitize(item) for item in found}
    if isinstance(value, list):
        doc[path] = [by_id[i] for i in ids if i in by_id]
    else:
        doc[path] = by_id.get(value)
    return doc
