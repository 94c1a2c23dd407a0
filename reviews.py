"""
Review writes. Each one runs the generic CRUD operation first and then
recomputes the statistics of every tour the write touched.
"""
import logging
from typing import Any, Dict, List, Mapping

from pymongo.database import Database

import crud
from api_features import VERSION_KEY
from errors import ValidationError, storage_errors
from models import reviews, to_object_id, tours, users
from ratings import refresh_tour_ratings

logger = logging.getLogger(__name__)


def check_owners(db: Database, payload: Mapping[str, Any]) -> None:
    """A review must point at a live tour and a live user."""
    errors = []
    for field, model in (("tour", tours), ("user", users)):
        value = payload.get(field)
        if to_object_id(value) is not None and model.find_by_id(db, value) is None:
            errors.append({"field": field, "message": f"No {model.name} found with that ID"})
    if errors:
        raise ValidationError("Invalid input data. " + ". ".join(f"{e['field']}: {e['message']}" for e in errors), errors)


def create_review(db: Database, payload: Mapping[str, Any]) -> Dict[str, Any]:
    check_owners(db, payload)
    doc = crud.create_one(db, reviews, payload)
    refresh_tour_ratings(db, doc["tour"])
    return doc


def update_review(db: Database, review_id: Any, payload: Mapping[str, Any]) -> Dict[str, Any]:
    before = crud.get_one(db, reviews, review_id)
    check_owners(db, payload)
    doc = crud.update_one(db, reviews, review_id, payload)
    refresh_tour_ratings(db, doc["tour"])
    if before["tour"] != doc["tour"]:
        refresh_tour_ratings(db, before["tour"])
    return doc


def delete_review(db: Database, review_id: Any) -> Dict[str, Any]:
    # the deleted document still names its tour
    doc = crud.delete_one(db, reviews, review_id)
    refresh_tour_ratings(db, doc["tour"])
    return doc


def _affected_tours(db: Database, query: Dict[str, Any]) -> List[Any]:
    with storage_errors():
        return reviews.collection(db).distinct("tour", query)


def delete_reviews(db: Database, query: Dict[str, Any]) -> int:
    """Delete every review matching ``query``.

    The affected tours are collected before the delete runs, since the
    documents are gone afterwards.
    """
    tour_ids = _affected_tours(db, query)
    try:
        with storage_errors():
            deleted = reviews.collection(db).delete_many(query).deleted_count
        logger.info("Deleted %d reviews across %d tours", deleted, len(tour_ids))
    finally:
        _refresh_all(db, tour_ids)
    return deleted


def update_reviews(db: Database, query: Dict[str, Any], changes: Mapping[str, Any]) -> int:
    """Apply ``changes`` to every review matching ``query``.

    ``changes`` is checked against the review schema field by field; tours
    named both before and after the update are recomputed.
    """
    document = _validated_fields(changes)
    if not document:
        return 0
    tour_ids = _affected_tours(db, query)
    if "tour" in document and document["tour"] not in tour_ids:
        tour_ids.append(document["tour"])
    try:
        with storage_errors():
            modified = reviews.collection(db).update_many(query, {"$set": document, "$inc": {VERSION_KEY: 1}}).modified_count
        logger.info("Updated %d reviews across %d tours", modified, len(tour_ids))
    finally:
        _refresh_all(db, tour_ids)
    return modified


def _refresh_all(db: Database, tour_ids: List[Any]) -> None:
    # runs after partial bulk writes too, some documents may have changed
    for tour_id in tour_ids:
        refresh_tour_ratings(db, tour_id)


def _validated_fields(changes: Mapping[str, Any]) -> Dict[str, Any]:
    # fill the required fields so only the supplied ones can fail
    clean = reviews.clean_payload(dict(changes), creating=False)
    filled = {
        "review": "x",
        "rating": 1,
        "tour": "0" * 24,
        "user": "0" * 24,
        **clean,
    }
    document = reviews.validate_document(filled)
    return {k: document[k] for k in clean if k in document}
