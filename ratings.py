"""Tour rating aggregates derived from the review set.

A tour's ``ratingsAverage`` and ``ratingsQuantity`` are a materialised view
over the reviews collection. They are never adjusted incrementally: every
review mutation recomputes them from the live reviews of the affected tour,
so concurrent mutations on the same tour converge once mutations stop.

``recompute`` is the pure read, ``apply_aggregate`` the only writer of the two
fields, and ``ReviewConsistencyHooks`` wires them to review create, update
and delete.
"""

import math
from dataclasses import dataclass
from typing import Any, Dict, Optional

from bson import ObjectId
from pymongo.database import Database
from pymongo.errors import PyMongoError

from config import RATINGS_REFRESH_ATTEMPTS
from database import REVIEWS, TOURS
from logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_RATINGS_AVERAGE = 4.5


@dataclass(frozen=True)
class AggregateResult:
    count: int
    average: Optional[float]


@dataclass
class MutationContext:
    """State of one update/delete, handed to the hooks around it.

    ``pre_image`` is captured before the store operation runs, ``result`` is
    the document the operation returned (None when nothing matched).
    """

    operation: str
    filter: Dict[str, Any]
    pre_image: Optional[Dict[str, Any]] = None
    result: Optional[Dict[str, Any]] = None

    @property
    def completed(self) -> bool:
        return self.result is not None


def round_rating(value: float) -> float:
    # Half-up to one decimal: 4.25 -> 4.3, 4.666 -> 4.7
    return math.floor(value * 10 + 0.5) / 10


def recompute(database: Database, tour_id: ObjectId) -> AggregateResult:
    stats = list(
        database[REVIEWS].aggregate(
            [
                {"$match": {"tour": tour_id}},
                {"$group": {"_id": "$tour", "nRating": {"$sum": 1}, "avgRating": {"$avg": "$rating"}}},
            ]
        )
    )
    if not stats:
        return AggregateResult(count=0, average=None)
    return AggregateResult(count=stats[0]["nRating"], average=stats[0]["avgRating"])


def apply_aggregate(database: Database, tour_id: ObjectId, result: AggregateResult) -> Dict[str, Any]:
    if result.count == 0 or result.average is None:
        fields = {"ratingsQuantity": 0, "ratingsAverage": DEFAULT_RATINGS_AVERAGE}
    else:
        fields = {"ratingsQuantity": result.count, "ratingsAverage": round_rating(result.average)}
    database[TOURS].update_one({"_id": tour_id}, {"$set": fields})
    return fields


def refresh_tour_ratings(database: Database, tour_id: ObjectId) -> AggregateResult:
    result = recompute(database, tour_id)
    fields = apply_aggregate(database, tour_id, result)
    logger.debug("ratings_refreshed", tour_id=str(tour_id), **fields)
    return result


def refresh_logged(database: Database, tour_id: ObjectId, attempts: int = RATINGS_REFRESH_ATTEMPTS) -> Optional[AggregateResult]:
    """Refresh the tour's ratings, retrying store failures.

    Store errors are retried up to `attempts` times; any other error is logged
    and ends the refresh at once. Failures never propagate: the review
    mutation already succeeded and a stale aggregate is fixed by the next
    refresh of the same tour.
    """
    for attempt in range(1, attempts + 1):
        try:
            return refresh_tour_ratings(database, tour_id)
        except PyMongoError as exc:
            logger.warning(
                "ratings_refresh_failed",
                tour_id=str(tour_id),
                attempt=attempt,
                attempts=attempts,
                error=str(exc),
            )
        except Exception:
            logger.exception("ratings_refresh_error", tour_id=str(tour_id), attempt=attempt)
            return None
    logger.error("ratings_refresh_abandoned", tour_id=str(tour_id), attempts=attempts)
    return None


class ReviewConsistencyHooks:
    """Keeps tour rating aggregates in step with review mutations.

    Create: the new review carries its tour id.
    Update/delete: the tour id is read from the pre-image captured before the
    store operation, since a deleted review can no longer be queried.
    """

    def __init__(self, attempts: int = RATINGS_REFRESH_ATTEMPTS):
        self.attempts = attempts

    def after_create(self, database: Database, document: Dict[str, Any]) -> None:
        refresh_logged(database, document["tour"], self.attempts)

    def before_mutation(self, database: Database, ctx: MutationContext) -> None:
        ctx.pre_image = database[REVIEWS].find_one(ctx.filter, {"tour": 1})

    def after_mutation(self, database: Database, ctx: MutationContext) -> None:
        if not ctx.completed:
            return
        # The pre-image can be missing if the review appeared between capture and
        # the operation; the returned document still names the tour.
        source = ctx.pre_image or ctx.result
        refresh_logged(database, source["tour"], self.attempts)
