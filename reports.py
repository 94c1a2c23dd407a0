"""
Read-only aggregations over tours: rating statistics by difficulty, start
dates per month and geospatial lookups around a point.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Tuple

from pymongo.database import Database

from api_features import VERSION_KEY
from errors import BadRequest, storage_errors
from models import tours

logger = logging.getLogger(__name__)

EARTH_RADIUS = {"mi": 3963.2, "km": 6378.1}
METERS_TO_UNIT = {"mi": 0.000621371, "km": 0.001}

TOP_CHEAP_PARAMS = {
    "limit": "5",
    "sort": "-ratings_average,price",
    "fields": "name,price,ratings_average,summary,difficulty",
}


def parse_latlng(latlng: str) -> Tuple[float, float]:
    parts = [p.strip() for p in (latlng or "").split(",")]
    try:
        lat, lng = (float(p) for p in parts)
    except ValueError as exc:
        raise BadRequest("Please provide latitude and longitude in the format lat,lng.") from exc
    if not (-90 <= lat <= 90 and -180 <= lng <= 180):
        raise BadRequest("Latitude or longitude out of range.")
    return lat, lng


def _unit(unit: str) -> str:
    if unit not in EARTH_RADIUS:
        raise BadRequest("Unit must be 'mi' or 'km'.")
    return unit


def _aggregate(db: Database, pipeline: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    with storage_errors():
        return list(tours.collection(db).aggregate(pipeline))


def tour_stats(db: Database) -> List[Dict[str, Any]]:
    pipeline = [
        {"$match": tours.scoped({"ratings_average": {"$gte": 4.5}})},
        {
            "$group": {
                "_id": "$difficulty",
                "num_tours": {"$sum": 1},
                "num_ratings": {"$sum": "$ratings_quantity"},
                "avg_rating": {"$avg": "$ratings_average"},
                "avg_price": {"$avg": "$price"},
                "min_price": {"$min": "$price"},
                "max_price": {"$max": "$price"},
            }
        },
        {"$sort": {"avg_price": 1}},
    ]
    return _aggregate(db, pipeline)


def monthly_plan(db: Database, year: int) -> List[Dict[str, Any]]:
    if not 1 <= year < 9999:
        raise BadRequest(f"Invalid year: {year}")
    pipeline = [
        {"$match": tours.default_filter},
        {"$unwind": "$start_dates"},
        {
            "$match": {
                "start_dates": {
                    "$gte": datetime(year, 1, 1),
                    "$lt": datetime(year + 1, 1, 1),
                }
            }
        },
        {"$group": {"_id": {"$month": "$start_dates"}, "num_tour_starts": {"$sum": 1}, "tours": {"$push": "$name"}}},
        {"$addFields": {"month": "$_id"}},
        {"$project": {"_id": 0}},
        {"$sort": {"num_tour_starts": -1, "month": 1}},
        {"$limit": 12},
    ]
    return _aggregate(db, pipeline)


def tours_within(db: Database, distance: float, latlng: str, unit: str) -> List[Dict[str, Any]]:
    lat, lng = parse_latlng(latlng)
    unit = _unit(unit)
    if distance <= 0:
        raise BadRequest("Distance must be positive.")
    # $centerSphere wants the radius in radians
    radius = distance / EARTH_RADIUS[unit]
    query = tours.scoped({"start_location": {"$geoWithin": {"$centerSphere": [[lng, lat], radius]}}})
    with storage_errors():
        return list(tours.collection(db).find(query, {VERSION_KEY: 0}))


def distances(db: Database, latlng: str, unit: str) -> List[Dict[str, Any]]:
    lat, lng = parse_latlng(latlng)
    unit = _unit(unit)
    pipeline = [
        {
            "$geoNear": {
                "near": {"type": "Point", "coordinates": [lng, lat]},
                "distanceField": "distance",
                "distanceMultiplier": METERS_TO_UNIT[unit],
                "query": tours.default_filter,
            }
        },
        {"$project": {"distance": 1, "name": 1}},
    ]
    return _aggregate(db, pipeline)
