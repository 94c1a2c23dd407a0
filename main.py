import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import Body, Depends, FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.database import Database
from pymongo.errors import PyMongoError

import crud
import database
import reports
from api_features import parse_query_items
from auth import get_current_user, require_role
from database import ensure_indexes, get_db
from errors import AppError, BadRequest, NotFound
from models import Model, reviews, to_object_id, tours, users
from reviews import create_review, delete_review, delete_reviews, update_review

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        try:
            ensure_indexes(database.db)
        except AppError as exc:
            # keep serving, routes report the outage themselves
            logger.error("Could not ensure indexes: %s", exc.message)
    yield


# App and CORS
app = FastAPI(title="Tours API", version="1.0.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

API = "/api/v1"
TOUR_POPULATE = ("guides", "reviews")
REVIEW_POPULATE = ("user",)
ME_UPDATABLE = ("name", "email", "photo")


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Helpers

def query_params(request: Request) -> Dict[str, Any]:
    return parse_query_items(request.query_params.multi_items())


def one(model: Model, doc: Dict[str, Any]) -> Dict[str, Any]:
    return {"status": "success", "data": {"data": model.sanitize(doc)}}


def many(model: Model, docs, total: int) -> Dict[str, Any]:
    return {
        "status": "success",
        "results": len(docs),
        "total": total,
        "data": {"data": [model.sanitize(d) for d in docs]},
    }


def tour_scope(tour_id: str) -> Dict[str, Any]:
    oid = to_object_id(tour_id)
    if oid is None:
        raise NotFound("No tour found with that ID")
    return {"tour": oid}


# Tours

@app.get(f"{API}/tours")
def get_all_tours(request: Request, db: Database = Depends(get_db)):
    docs, total = crud.get_all(db, tours, query_params(request))
    return many(tours, docs, total)


@app.get(f"{API}/tours/top-5-cheap")
def top_tours(request: Request, db: Database = Depends(get_db)):
    params = {**query_params(request), **reports.TOP_CHEAP_PARAMS}
    docs, total = crud.get_all(db, tours, params)
    return many(tours, docs, total)


@app.get(f"{API}/tours/tour-stats")
def get_tour_stats(db: Database = Depends(get_db)):
    return {"status": "success", "data": {"stats": reports.tour_stats(db)}}


@app.get(f"{API}/tours/monthly-plan/{{year}}")
def get_monthly_plan(
    year: int,
    db: Database = Depends(get_db),
    actor=Depends(require_role("admin", "lead-guide", "guide")),
):
    return {"status": "success", "data": {"plan": reports.monthly_plan(db, year)}}


@app.get(f"{API}/tours/tours-within/{{distance}}/center/{{latlng}}/unit/{{unit}}")
def get_tours_within(distance: float, latlng: str, unit: str, db: Database = Depends(get_db)):
    docs = reports.tours_within(db, distance, latlng, unit)
    return {"status": "success", "results": len(docs), "data": {"data": [tours.sanitize(d) for d in docs]}}


@app.get(f"{API}/tours/distances/{{latlng}}/unit/{{unit}}")
def get_distances(latlng: str, unit: str, db: Database = Depends(get_db)):
    docs = reports.distances(db, latlng, unit)
    return {"status": "success", "data": {"data": [tours.sanitize(d) for d in docs]}}


@app.post(f"{API}/tours", status_code=201)
def create_tour(
    payload: Dict[str, Any] = Body(...),
    db: Database = Depends(get_db),
    actor=Depends(require_role("admin", "lead-guide")),
):
    return one(tours, crud.create_one(db, tours, payload))


@app.get(f"{API}/tours/{{tour_id}}")
def get_tour(tour_id: str, db: Database = Depends(get_db)):
    return one(tours, crud.get_one(db, tours, tour_id, populate=TOUR_POPULATE))


@app.patch(f"{API}/tours/{{tour_id}}")
def update_tour(
    tour_id: str,
    payload: Dict[str, Any] = Body(...),
    db: Database = Depends(get_db),
    actor=Depends(require_role("admin", "lead-guide")),
):
    return one(tours, crud.update_one(db, tours, tour_id, payload))


@app.delete(f"{API}/tours/{{tour_id}}", status_code=204)
def delete_tour(tour_id: str, db: Database = Depends(get_db), actor=Depends(require_role("admin", "lead-guide"))):
    doc = crud.delete_one(db, tours, tour_id)
    delete_reviews(db, {"tour": doc["_id"]})
    return Response(status_code=204)


# Reviews

def set_tour_user_ids(payload: Dict[str, Any], actor: Dict[str, Any], tour_id: Optional[str] = None) -> Dict[str, Any]:
    body = dict(payload)
    if tour_id and not body.get("tour"):
        body["tour"] = tour_id
    if not body.get("user"):
        body["user"] = actor["id"]
    return body


@app.get(f"{API}/tours/{{tour_id}}/reviews")
def get_tour_reviews(tour_id: str, request: Request, db: Database = Depends(get_db), actor=Depends(get_current_user)):
    docs, total = crud.get_all(db, reviews, query_params(request), tour_scope(tour_id), populate=REVIEW_POPULATE)
    return many(reviews, docs, total)


@app.post(f"{API}/tours/{{tour_id}}/reviews", status_code=201)
def create_tour_review(
    tour_id: str,
    payload: Dict[str, Any] = Body(...),
    db: Database = Depends(get_db),
    actor=Depends(require_role("user")),
):
    return one(reviews, create_review(db, set_tour_user_ids(payload, actor, tour_id)))


@app.get(f"{API}/reviews")
def get_all_reviews(request: Request, db: Database = Depends(get_db), actor=Depends(get_current_user)):
    docs, total = crud.get_all(db, reviews, query_params(request), populate=REVIEW_POPULATE)
    return many(reviews, docs, total)


@app.post(f"{API}/reviews", status_code=201)
def create_any_review(
    payload: Dict[str, Any] = Body(...),
    db: Database = Depends(get_db),
    actor=Depends(require_role("user")),
):
    return one(reviews, create_review(db, set_tour_user_ids(payload, actor)))


@app.get(f"{API}/reviews/{{review_id}}")
def get_review(review_id: str, db: Database = Depends(get_db), actor=Depends(get_current_user)):
    return one(reviews, crud.get_one(db, reviews, review_id, populate=REVIEW_POPULATE))


@app.patch(f"{API}/reviews/{{review_id}}")
def patch_review(
    review_id: str,
    payload: Dict[str, Any] = Body(...),
    db: Database = Depends(get_db),
    actor=Depends(require_role("user", "admin")),
):
    return one(reviews, update_review(db, review_id, payload))


@app.delete(f"{API}/reviews/{{review_id}}", status_code=204)
def remove_review(review_id: str, db: Database = Depends(get_db), actor=Depends(require_role("user", "admin"))):
    delete_review(db, review_id)
    return Response(status_code=204)


# Users

@app.get(f"{API}/users/me")
def get_me(db: Database = Depends(get_db), actor=Depends(get_current_user)):
    return one(users, crud.get_one(db, users, actor["id"]))


@app.get(f"{API}/users/me/reviews")
def get_my_reviews(request: Request, db: Database = Depends(get_db), actor=Depends(get_current_user)):
    docs, total = crud.get_all(db, reviews, query_params(request), {"user": to_object_id(actor["id"])})
    return many(reviews, docs, total)


@app.patch(f"{API}/users/me")
def update_me(payload: Dict[str, Any] = Body(...), db: Database = Depends(get_db), actor=Depends(get_current_user)):
    if "password" in payload or "password_confirm" in payload:
        raise BadRequest("This route is not for password updates.")
    body = {k: v for k, v in payload.items() if k in ME_UPDATABLE}
    return one(users, crud.update_one(db, users, actor["id"], body))


@app.delete(f"{API}/users/me", status_code=204)
def delete_me(db: Database = Depends(get_db), actor=Depends(get_current_user)):
    crud.delete_one(db, users, actor["id"])
    return Response(status_code=204)


@app.get(f"{API}/users")
def get_all_users(request: Request, db: Database = Depends(get_db), admin=Depends(require_role("admin"))):
    docs, total = crud.get_all(db, users, query_params(request))
    return many(users, docs, total)


@app.post(f"{API}/users", status_code=201)
def create_user(payload: Dict[str, Any] = Body(...), db: Database = Depends(get_db), admin=Depends(require_role("admin"))):
    return one(users, crud.create_one(db, users, payload))


@app.get(f"{API}/users/{{user_id}}")
def get_user(user_id: str, db: Database = Depends(get_db), admin=Depends(require_role("admin"))):
    return one(users, crud.get_one(db, users, user_id))


@app.patch(f"{API}/users/{{user_id}}")
def update_user(
    user_id: str,
    payload: Dict[str, Any] = Body(...),
    db: Database = Depends(get_db),
    admin=Depends(require_role("admin")),
):
    return one(users, crud.update_one(db, users, user_id, payload))


@app.delete(f"{API}/users/{{user_id}}", status_code=204)
def delete_user(user_id: str, db: Database = Depends(get_db), admin=Depends(require_role("admin"))):
    crud.delete_one(db, users, user_id)
    return Response(status_code=204)


# Utility endpoints
@app.get("/")
def root():
    return {"message": "Tours API running"}


@app.get("/test")
def test_database():
    try:
        collections = database.db.list_collection_names() if database.db is not None else []
        return {"backend": "ok", "database": "ok" if database.db is not None else "missing", "collections": collections}
    except PyMongoError as e:
        return {"backend": "ok", "database": f"error: {e}"}


if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
