from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.database import Database
from pymongo.errors import PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

import factory
import tours
from auth import get_current_user, require_role
from config import API_PREFIX, CORS_ORIGINS, ENVIRONMENT, is_production
from database import REVIEWS, USERS, get_db, init_indexes, sanitize, to_object_id
from errors import AppError, BadRequest, Forbidden, NotFound, Unauthorized
from logging_config import configure_logging, get_logger
from query import QueryShape
from resources import REVIEW, TOUR, TOUR_REVIEWS, USER, reference_id
from schemas import LoginRequest, UpdatePasswordRequest
from security import create_access_token, hash_password, verify_password

configure_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("startup", environment=ENVIRONMENT)
    init_indexes(get_db())
    yield
    logger.info("shutdown")


# App and CORS
app = FastAPI(title="Natours API", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

api = APIRouter(prefix=API_PREFIX)

TOUR_EDITORS = ("admin", "lead-guide")
REVIEW_EDITORS = ("user", "admin")


# Helpers

def success(key: str, value: Any, results: Optional[int] = None, **extra) -> Dict[str, Any]:
    body: Dict[str, Any] = {"status": "success"}
    if results is not None:
        body["results"] = results
    body.update(extra)
    body["data"] = {key: value}
    return body


def listing(docs: List[Dict], total: Optional[int] = None) -> Dict[str, Any]:
    extra = {"total": total} if total is not None else {}
    return success("data", [sanitize(d) for d in docs], results=len(docs), **extra)


def token_response(user: Dict[str, Any], status_code: int = 200) -> JSONResponse:
    token = create_access_token(str(user["_id"]))
    user = factory.strip_hidden(USER, user)
    return JSONResponse(
        status_code=status_code,
        content={"status": "success", "token": token, "data": {"user": jsonable_encoder(sanitize(user))}},
    )


def assert_review_owner(database: Database, review_id: str, current_user: Dict[str, Any]) -> None:
    if current_user.get("role") == "admin":
        return
    oid = to_object_id(review_id)
    review = database[REVIEWS].find_one({"_id": oid}, {"user": 1}) if oid else None
    if review is None:
        raise NotFound(REVIEW.not_found_message)
    if review["user"] != current_user["_id"]:
        raise Forbidden("You can only change your own reviews")


# Errors

@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error("request_failed", path=request.url.path, error=exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    messages = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err["loc"] if p != "body")
        messages.append(f"{loc}: {err['msg']}" if loc else err["msg"])
    return JSONResponse(status_code=400, content={"status": "fail", "message": "Invalid input data. " + ". ".join(messages)})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    status = "fail" if exc.status_code < 500 else "error"
    return JSONResponse(status_code=exc.status_code, content={"status": status, "message": str(exc.detail)})


@app.exception_handler(PyMongoError)
async def store_error_handler(request: Request, exc: PyMongoError):
    logger.exception("store_error", path=request.url.path)
    message = "Something went very wrong!" if is_production() else f"Database error: {exc}"
    return JSONResponse(status_code=500, content={"status": "error", "message": message})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("unhandled_error", path=request.url.path)
    message = "Something went very wrong!" if is_production() else str(exc)
    return JSONResponse(status_code=500, content={"status": "error", "message": message})


# Tour Routes
@api.get("/tours")
def get_all_tours(request: Request, database: Database = Depends(get_db)):
    docs, total = factory.list_all(database, TOUR, QueryShape.from_params(request.query_params))
    return listing(docs, total)


@api.get("/tours/top-5-cheap")
def top_five_cheap(request: Request, database: Database = Depends(get_db)):
    params = dict(request.query_params)
    params.update(tours.TOP_CHEAP_PARAMS)
    docs, total = factory.list_all(database, TOUR, QueryShape.from_params(params))
    return listing(docs, total)


@api.get("/tours/stats")
def get_tour_stats(database: Database = Depends(get_db)):
    return success("stats", tours.tour_stats(database))


@api.get("/tours/monthly-plan/{year}")
def get_monthly_plan(year: int, database: Database = Depends(get_db), user=Depends(require_role("admin", "lead-guide", "guide"))):
    return success("plan", tours.monthly_plan(database, year))


@api.get("/tours/within/{distance}/center/{latlng}/unit/{unit}")
def get_tours_within(distance: float, latlng: str, unit: str, database: Database = Depends(get_db)):
    docs = tours.tours_within(database, distance, latlng, unit)
    return listing(docs)


@api.get("/tours/distances/{latlng}/unit/{unit}")
def get_distances(latlng: str, unit: str, database: Database = Depends(get_db)):
    distances = tours.distances_from(database, latlng, unit)
    return success("data", [sanitize(d) for d in distances])


@api.get("/tours/{tour_id}")
def get_tour(tour_id: str, database: Database = Depends(get_db)):
    return success("data", sanitize(factory.get_one(database, TOUR, tour_id, [TOUR_REVIEWS])))


@api.post("/tours", status_code=201)
def create_tour(body: Dict[str, Any] = Body(...), database: Database = Depends(get_db), user=Depends(require_role(*TOUR_EDITORS))):
    return success("data", sanitize(factory.create_one(database, TOUR, body)))


@api.patch("/tours/{tour_id}")
def update_tour(tour_id: str, body: Dict[str, Any] = Body(...), database: Database = Depends(get_db), user=Depends(require_role(*TOUR_EDITORS))):
    return success("data", sanitize(factory.update_one(database, TOUR, tour_id, body)))


@api.delete("/tours/{tour_id}", status_code=204)
def delete_tour(tour_id: str, database: Database = Depends(get_db), user=Depends(require_role(*TOUR_EDITORS))):
    factory.delete_one(database, TOUR, tour_id)
    return Response(status_code=204)


# Review Routes
@api.get("/tours/{tour_id}/reviews")
def get_tour_reviews(tour_id: str, request: Request, database: Database = Depends(get_db), current_user=Depends(get_current_user)):
    base = {"tour": reference_id(tour_id, "tour")}
    docs, total = factory.list_all(database, REVIEW, QueryShape.from_params(request.query_params), base)
    return listing(docs, total)


@api.post("/tours/{tour_id}/reviews", status_code=201)
def create_tour_review(tour_id: str, body: Dict[str, Any] = Body(...), database: Database = Depends(get_db), current_user=Depends(require_role("user"))):
    body = {**body, "tour": tour_id, "user": str(current_user["_id"])}
    return success("data", sanitize(factory.create_one(database, REVIEW, body)))


@api.get("/reviews")
def get_all_reviews(request: Request, database: Database = Depends(get_db), current_user=Depends(get_current_user)):
    docs, total = factory.list_all(database, REVIEW, QueryShape.from_params(request.query_params))
    return listing(docs, total)


@api.post("/reviews", status_code=201)
def create_review(body: Dict[str, Any] = Body(...), database: Database = Depends(get_db), current_user=Depends(require_role("user"))):
    body = {**body, "user": str(current_user["_id"])}
    return success("data", sanitize(factory.create_one(database, REVIEW, body)))


@api.get("/reviews/{review_id}")
def get_review(review_id: str, database: Database = Depends(get_db), current_user=Depends(get_current_user)):
    return success("data", sanitize(factory.get_one(database, REVIEW, review_id)))


@api.patch("/reviews/{review_id}")
def update_review(review_id: str, body: Dict[str, Any] = Body(...), database: Database = Depends(get_db), current_user=Depends(require_role(*REVIEW_EDITORS))):
    assert_review_owner(database, review_id, current_user)
    return success("data", sanitize(factory.update_one(database, REVIEW, review_id, body)))


@api.delete("/reviews/{review_id}", status_code=204)
def delete_review(review_id: str, database: Database = Depends(get_db), current_user=Depends(require_role(*REVIEW_EDITORS))):
    assert_review_owner(database, review_id, current_user)
    factory.delete_one(database, REVIEW, review_id)
    return Response(status_code=204)


# Auth Routes
@api.post("/users/signup", status_code=201)
def signup(body: Dict[str, Any] = Body(...), database: Database = Depends(get_db)):
    user = factory.create_one(database, USER, body)
    return token_response(user, status_code=201)


@api.post("/users/login")
def login(payload: LoginRequest, database: Database = Depends(get_db)):
    user = factory.find_one_raw(database, USER, {"email": payload.email.lower()})
    if not user or not verify_password(payload.password, user.get("password", "")):
        raise Unauthorized("Incorrect email or password")
    return token_response(user)


@api.patch("/users/updateMyPassword")
def update_my_password(payload: UpdatePasswordRequest, database: Database = Depends(get_db), current_user=Depends(get_current_user)):
    if not verify_password(payload.passwordCurrent, current_user.get("password", "")):
        raise Unauthorized("Your current password is wrong.")
    # Back-dated so the token issued below is not older than the change.
    changed_at = datetime.now(timezone.utc) - timedelta(seconds=1)
    database[USERS].update_one(
        {"_id": current_user["_id"]},
        {"$set": {"password": hash_password(payload.password), "passwordChangedAt": changed_at}},
    )
    return token_response(factory.find_one_raw(database, USER, {"_id": current_user["_id"]}))


# User Routes
@api.get("/users/me")
def get_me(database: Database = Depends(get_db), current_user=Depends(get_current_user)):
    return success("data", sanitize(factory.get_one(database, USER, current_user["_id"])))


@api.patch("/users/me")
@api.patch("/users/updateMe")
def update_me(body: Dict[str, Any] = Body(...), database: Database = Depends(get_db), current_user=Depends(get_current_user)):
    if "password" in body or "passwordConfirm" in body:
        raise BadRequest("This route is not for password updates. Please use /updateMyPassword.")
    filtered = {k: v for k, v in body.items() if k in ("name", "email")}
    return success("user", sanitize(factory.update_one(database, USER, current_user["_id"], filtered)))


@api.delete("/users/me", status_code=204)
def delete_me(database: Database = Depends(get_db), current_user=Depends(get_current_user)):
    database[USERS].update_one({"_id": current_user["_id"]}, {"$set": {"active": False}})
    return Response(status_code=204)


@api.get("/users")
def get_all_users(request: Request, database: Database = Depends(get_db), admin=Depends(require_role("admin"))):
    docs, total = factory.list_all(database, USER, QueryShape.from_params(request.query_params))
    return listing(docs, total)


@api.post("/users")
def create_user(admin=Depends(require_role("admin"))):
    return JSONResponse(
        status_code=500,
        content={"status": "error", "message": "This route is not defined! Please use /signup instead."},
    )


@api.get("/users/{user_id}")
def get_user(user_id: str, database: Database = Depends(get_db), admin=Depends(require_role("admin"))):
    return success("data", sanitize(factory.get_one(database, USER, user_id)))


@api.patch("/users/{user_id}")
def update_user(user_id: str, body: Dict[str, Any] = Body(...), database: Database = Depends(get_db), admin=Depends(require_role("admin"))):
    return success("data", sanitize(factory.update_one(database, USER, user_id, body)))


@api.delete("/users/{user_id}", status_code=204)
def delete_user(user_id: str, database: Database = Depends(get_db), admin=Depends(require_role("admin"))):
    factory.delete_one(database, USER, user_id)
    return Response(status_code=204)


app.include_router(api)


# Health
@app.get("/")
def root():
    return {"message": "Natours API running"}

