"""Tour read paths beyond plain CRUD: geospatial queries and reports."""

from datetime import datetime
from typing import Any, Dict, List, Tuple

from pymongo.database import Database

import factory
from database import TOURS
from errors import BadRequest
from resources import TOUR, exclude_secret_tours

EARTH_RADIUS = {"mi": 3963.2, "km": 6378.1}
METERS_TO_UNIT = {"mi": 0.000621371, "km": 0.001}

TOP_CHEAP_PARAMS = {
    "limit": "5",
    "sort": "-ratingsAverage,price",
    "fields": "name,price,ratingsAverage,summary,difficulty",
}


def parse_latlng(latlng: str) -> Tuple[float, float]:
    """Parse "lat,lng" into floats, before anything touches the store."""
    parts = [p.strip() for p in (latlng or "").split(",")]
    if len(parts) != 2 or not parts[0] or not parts[1]:
        raise BadRequest("Please provide latitude and longitude in the format lat,lng.")
    try:
        lat, lng = float(parts[0]), float(parts[1])
    except ValueError:
        raise BadRequest("Please provide latitude and longitude in the format lat,lng.")
    if not (-90 <= lat <= 90 and -180 <= lng <= 180):
        raise BadRequest("Latitude must be within [-90, 90] and longitude within [-180, 180].")
    return lat, lng


def check_unit(unit: str) -> str:
    if unit not in EARTH_RADIUS:
        raise BadRequest("Unit must be either 'mi' or 'km'.")
    return unit


def radius_in_radians(distance: float, unit: str) -> float:
    return distance / EARTH_RADIUS[check_unit(unit)]


def within_filter(distance: float, latlng: str, unit: str) -> Dict[str, Any]:
    lat, lng = parse_latlng(latlng)
    if distance <= 0:
        raise BadRequest("Distance must be a positive number.")
    radius = radius_in_radians(distance, unit)
    return {"startLocation": {"$geoWithin": {"$centerSphere": [[lng, lat], radius]}}}


def tours_within(database: Database, distance: float, latlng: str, unit: str) -> List[Dict[str, Any]]:
    return factory.find(database, TOUR, within_filter(distance, latlng, unit))


def distances_pipeline(latlng: str, unit: str) -> List[Dict[str, Any]]:
    lat, lng = parse_latlng(latlng)
    multiplier = METERS_TO_UNIT[check_unit(unit)]
    return [
        {
            # $geoNear must be the first stage and needs the 2dsphere index on startLocation.
            "$geoNear": {
                "near": {"type": "Point", "coordinates": [lng, lat]},
                "distanceField": "distance",
                "distanceMultiplier": multiplier,
                "key": "startLocation",
                "query": exclude_secret_tours(),
            }
        },
        {"$project": {"distance": 1, "name": 1}},
    ]


def distances_from(database: Database, latlng: str, unit: str) -> List[Dict[str, Any]]:
    pipeline = distances_pipeline(latlng, unit)
    return list(database[TOURS].aggregate(pipeline))


# Reports

def stats_pipeline() -> List[Dict[str, Any]]:
    return [
        {"$match": {"ratingsAverage": {"$gte": 4.5}, **exclude_secret_tours()}},
        {
            "$group": {
                "_id": {"$toUpper": "$difficulty"},
                "numTours": {"$sum": 1},
                "numRatings": {"$sum": "$ratingsQuantity"},
                "avgRating": {"$avg": "$ratingsAverage"},
                "avgPrice": {"$avg": "$price"},
                "minPrice": {"$min": "$price"},
                "maxPrice": {"$max": "$price"},
            }
        },
        {"$sort": {"avgPrice": 1}},
    ]


def tour_stats(database: Database) -> List[Dict[str, Any]]:
    return list(database[TOURS].aggregate(stats_pipeline()))


def monthly_plan_pipeline(year: int) -> List[Dict[str, Any]]:
    return [
        {"$match": exclude_secret_tours()},
        {"$unwind": "$startDates"},
        {
            "$match": {
                "startDates": {
                    # Naive bounds are read as UTC by bson.
                    "$gte": datetime(year, 1, 1),
                    "$lte": datetime(year, 12, 31, 23, 59, 59),
                }
            }
        },
        {"$group": {"_id": {"$month": "$startDates"}, "numTourStarts": {"$sum": 1}, "tours": {"$push": "$name"}}},
        {"$addFields": {"month": "$_id"}},
        {"$project": {"_id": 0}},
        {"$sort": {"numTourStarts": -1}},
        {"$limit": 12},
    ]


def monthly_plan(database: Database, year: int) -> List[Dict[str, Any]]:
    if not 1970 <= year <= 9999:
        raise BadRequest("Year must be between 1970 and 9999.")
    return list(database[TOURS].aggregate(monthly_plan_pipeline(year)))
