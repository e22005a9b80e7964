"""Resource definitions for the generic handlers in ``factory``.

Each resource names its collection, its create/update schemas and the
ordered read steps applied to every query against it: scopes first (filters
that hide records), then populate steps (reference fields loaded from other
resources, themselves scoped), then derived read-only fields.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple, Type

from bson import ObjectId
from pydantic import BaseModel
from pymongo.database import Database
from slugify import slugify

import schemas
from database import REVIEWS, TOURS, USERS, to_object_id
from errors import BadRequest, ValidationError
from ratings import DEFAULT_RATINGS_AVERAGE, ReviewConsistencyHooks
from security import hash_password

Scope = Callable[[], Dict[str, Any]]


@dataclass(frozen=True)
class Populate:
    """Load related documents into ``path``.

    Without ``foreign_field`` the path holds an id (or a list of ids) of the
    target resource. With it, the path is virtual: it receives the target
    documents whose ``foreign_field`` equals this document's ``_id``.
    """

    path: str
    target: "Resource"
    projection: Optional[Dict[str, int]] = None
    foreign_field: Optional[str] = None


@dataclass(frozen=True)
class Resource:
    name: str
    collection: str
    create_schema: Type[BaseModel]
    update_schema: Type[BaseModel]
    scopes: Tuple[Scope, ...] = ()
    populate: Tuple[Populate, ...] = ()
    hidden: Tuple[str, ...] = ()
    derive: Optional[Callable[[Dict[str, Any]], Dict[str, Any]]] = None
    prepare: Optional[Callable[[Database, Dict[str, Any], bool], Dict[str, Any]]] = None
    hooks: Any = None
    not_found: str = field(default="")

    @property
    def not_found_message(self) -> str:
        return self.not_found or f"No {self.name} found with that ID"


# Helpers

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def reference_id(value: Any, label: str) -> ObjectId:
    oid = to_object_id(value)
    if oid is None:
        raise BadRequest(f"Invalid {label} id: {value}")
    return oid


# Scopes

def exclude_inactive_users() -> Dict[str, Any]:
    return {"active": {"$ne": False}}


def exclude_secret_tours() -> Dict[str, Any]:
    return {"secretTour": {"$ne": True}}


# Users

def prepare_user(database: Database, data: Dict[str, Any], creating: bool) -> Dict[str, Any]:
    if creating:
        data["password"] = hash_password(data["password"])
        data.pop("passwordConfirm", None)
        data["role"] = "user"
        data["active"] = True
    return data


USER = Resource(
    name="user",
    collection=USERS,
    create_schema=schemas.UserSignup,
    update_schema=schemas.UserUpdate,
    scopes=(exclude_inactive_users,),
    hidden=("password", "active", "__v"),
    prepare=prepare_user,
)


# Reviews

def prepare_review(database: Database, data: Dict[str, Any], creating: bool) -> Dict[str, Any]:
    if creating:
        data["tour"] = reference_id(data["tour"], "tour")
        data["user"] = reference_id(data["user"], "user")
        if database[TOURS].find_one({"_id": data["tour"]}, {"_id": 1}) is None:
            raise ValidationError("Review must belong to an existing tour.")
        data["createdAt"] = utcnow()
    return data


REVIEW = Resource(
    name="review",
    collection=REVIEWS,
    create_schema=schemas.Review,
    update_schema=schemas.ReviewUpdate,
    populate=(Populate("user", USER, projection={"name": 1, "photo": 1}),),
    hidden=("__v",),
    prepare=prepare_review,
    hooks=ReviewConsistencyHooks(),
)


# Tours

def prepare_tour(database: Database, data: Dict[str, Any], creating: bool) -> Dict[str, Any]:
    if "name" in data:
        data["slug"] = slugify(data["name"])
    if "guides" in data:
        data["guides"] = [reference_id(g, "guide") for g in data["guides"]]
    if creating:
        data["createdAt"] = utcnow()
        data["ratingsAverage"] = DEFAULT_RATINGS_AVERAGE
        data["ratingsQuantity"] = 0
    return data


def derive_tour(doc: Dict[str, Any]) -> Dict[str, Any]:
    if doc.get("duration") is not None:
        doc["durationWeeks"] = doc["duration"] / 7
    return doc


TOUR = Resource(
    name="tour",
    collection=TOURS,
    create_schema=schemas.Tour,
    update_schema=schemas.TourUpdate,
    scopes=(exclude_secret_tours,),
    populate=(Populate("guides", USER, projection={"passwordChangedAt": 0, "__v": 0}),),
    hidden=("createdAt", "__v"),
    derive=derive_tour,
    prepare=prepare_tour,
)

TOUR_REVIEWS = Populate("reviews", REVIEW, foreign_field="tour")

RESOURCES: List[Resource] = [USER, REVIEW, TOUR]
