"""
Keeps a tour's ``ratings_quantity`` and ``ratings_average`` equal to the count
and mean of its reviews.

The recomputation reads every review of the tour and then writes the tour in a
second, separate operation. Two review writes on the same tour racing here can
interleave; whichever recomputation writes last wins. That is accepted: its
read happened after its own review write, so once all writers finish the
stored statistics match the reviews again. Ratings are display data, so
recomputations are not serialized or wrapped in a transaction.
"""
import logging
from typing import Any, Dict, Optional

from bson import ObjectId
from pymongo.database import Database
from pymongo.errors import PyMongoError

from errors import AppError, storage_errors
from models import reviews, to_object_id, tours
from schemas import DEFAULT_RATINGS_AVERAGE, DEFAULT_RATINGS_QUANTITY, round_rating

logger = logging.getLogger(__name__)


def review_stats(db: Database, tour_id: ObjectId) -> Optional[Dict[str, Any]]:
    pipeline = [
        {"$match": {"tour": tour_id}},
        {"$group": {"_id": "$tour", "n_rating": {"$sum": 1}, "avg_rating": {"$avg": "$rating"}}},
    ]
    with storage_errors():
        stats = list(reviews.collection(db).aggregate(pipeline))
    return stats[0] if stats else None


def calc_average_ratings(db: Database, tour_id: Any) -> Dict[str, Any]:
    """Recompute and store the rating statistics of one tour.

    With no reviews left the tour goes back to the defaults (0 ratings,
    average 4.5). Secret tours are updated too: the write goes straight to
    the collection, not through the tour default filter.
    """
    oid = to_object_id(tour_id)
    if oid is None:
        raise ValueError(f"Invalid tour id: {tour_id}")
    stats = review_stats(db, oid)
    if stats:
        values = {
            "ratings_quantity": stats["n_rating"],
            "ratings_average": round_rating(stats["avg_rating"]),
        }
    else:
        values = {
            "ratings_quantity": DEFAULT_RATINGS_QUANTITY,
            "ratings_average": DEFAULT_RATINGS_AVERAGE,
        }
    with storage_errors():
        result = tours.collection(db).update_one({"_id": oid}, {"$set": values})
    if result.matched_count == 0:
        logger.info("Tour %s no longer exists, ratings not stored", oid)
    else:
        logger.debug("Tour %s ratings now %s", oid, values)
    return values


def refresh_tour_ratings(db: Database, tour_id: Any) -> Optional[Dict[str, Any]]:
    """Run calc_average_ratings after a review write.

    The review write has already succeeded at this point; a failure here is
    logged and the stale statistics are left until the next review write.
    """
    try:
        return calc_average_ratings(db, tour_id)
    except (AppError, PyMongoError):
        logger.exception("Could not recompute ratings for tour %s", tour_id)
        return None
