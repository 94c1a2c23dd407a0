import logging

import pytest

import mongomock
from pymongo.errors import NetworkTimeout

import crud
import ratings
import reviews as review_writes
from conftest import add_user, tour_payload
from errors import Conflict, StorageError, ValidationError
from models import tours
from ratings import calc_average_ratings, refresh_tour_ratings
from reviews import create_review, delete_review, delete_reviews, update_review, update_reviews


def stats(db, tour):
    doc = db["tour"].find_one({"_id": tour["_id"]})
    return doc["ratings_quantity"], doc["ratings_average"]


def review(tour, user, rating, text="Lovely trip"):
    return {"review": text, "rating": rating, "tour": str(tour["_id"]), "user": str(user["_id"])}


@pytest.fixture
def tour(db):
    return crud.create_one(db, tours, tour_payload(price=100))


@pytest.fixture
def u1(db):
    return add_user(db, name="Lourdes Browning")


@pytest.fixture
def u2(db):
    return add_user(db, name="Sophie Louise Hirst")


def test_review_lifecycle_scenario(db, tour, u1, u2):
    with pytest.raises(ValidationError):
        crud.update_one(db, tours, tour["_id"], {"price_discount": 150})

    r1 = create_review(db, review(tour, u1, 5))
    assert stats(db, tour) == (1, 5.0)

    r2 = create_review(db, review(tour, u2, 3))
    assert stats(db, tour) == (2, 4.0)

    delete_review(db, r1["_id"])
    assert stats(db, tour) == (1, 3.0)

    delete_review(db, r2["_id"])
    assert stats(db, tour) == (0, 4.5)


def test_second_review_for_same_tour_and_user_conflicts(db, tour, u1):
    create_review(db, review(tour, u1, 4))
    with pytest.raises(Conflict):
        create_review(db, review(tour, u1, 2, "Changed my mind"))
    assert stats(db, tour) == (1, 4.0)


def test_average_rounds_to_one_decimal(db, tour, u1, u2):
    u3 = add_user(db, name="Max Smith")
    create_review(db, review(tour, u1, 5))
    create_review(db, review(tour, u2, 5))
    create_review(db, review(tour, u3, 4))
    assert stats(db, tour) == (3, 4.7)


def test_update_review_recomputes(db, tour, u1, u2):
    create_review(db, review(tour, u1, 5))
    r2 = create_review(db, review(tour, u2, 5))
    update_review(db, r2["_id"], {"rating": 2})
    assert stats(db, tour) == (2, 3.5)


def test_moving_a_review_recomputes_both_tours(db, tour, u1):
    other = crud.create_one(db, tours, tour_payload(name="The Sea Explorer"))
    r1 = create_review(db, review(tour, u1, 2))
    update_review(db, r1["_id"], {"tour": str(other["_id"])})
    assert stats(db, tour) == (0, 4.5)
    assert stats(db, other) == (1, 2.0)


def test_review_needs_live_tour_and_user(db, tour, u1):
    crud.delete_one(db, tours, tour["_id"])
    with pytest.raises(ValidationError) as exc:
        create_review(db, review(tour, u1, 5))
    assert [e["field"] for e in exc.value.errors] == ["tour"]


def test_review_validation_reports_every_rule(db, u1, tour):
    with pytest.raises(ValidationError) as exc:
        create_review(db, {"review": "  ", "rating": 9, "tour": str(tour["_id"]), "user": str(u1["_id"])})
    assert {e["field"] for e in exc.value.errors} == {"review", "rating"}


def test_client_cannot_author_derived_ratings(db, tour, u1):
    create_review(db, review(tour, u1, 2))
    crud.update_one(db, tours, tour["_id"], {"ratings_average": 5, "ratings_quantity": 100})
    assert stats(db, tour) == (1, 2.0)


def test_bulk_delete_recomputes_every_affected_tour(db, tour, u1, u2):
    other = crud.create_one(db, tours, tour_payload(name="The Sea Explorer"))
    create_review(db, review(tour, u1, 5))
    create_review(db, review(tour, u2, 1))
    create_review(db, review(other, u1, 4))
    assert delete_reviews(db, {"user": u1["_id"]}) == 2
    assert stats(db, tour) == (1, 1.0)
    assert stats(db, other) == (0, 4.5)


def test_bulk_update_recomputes(db, tour, u1, u2):
    create_review(db, review(tour, u1, 5))
    create_review(db, review(tour, u2, 5))
    assert update_reviews(db, {"tour": tour["_id"]}, {"rating": 3}) == 2
    assert stats(db, tour) == (2, 3.0)


def test_bulk_update_is_validated(db, tour, u1):
    create_review(db, review(tour, u1, 5))
    with pytest.raises(ValidationError):
        update_reviews(db, {"tour": tour["_id"]}, {"rating": 0})


def test_secret_tours_still_get_statistics(db, tour, u1):
    create_review(db, review(tour, u1, 3))
    db["tour"].update_one({"_id": tour["_id"]}, {"$set": {"secret_tour": True, "ratings_quantity": 0}})
    assert calc_average_ratings(db, tour["_id"]) == {"ratings_quantity": 1, "ratings_average": 3.0}
    assert stats(db, tour) == (1, 3.0)


def test_recompute_failure_keeps_the_review(db, tour, u1, monkeypatch, caplog):
    def broken(db, tour_id):
        raise StorageError("Storage unavailable: timed out")

    monkeypatch.setattr(ratings, "review_stats", broken)
    with caplog.at_level(logging.ERROR, logger="ratings"):
        doc = create_review(db, review(tour, u1, 1))
    assert db["review"].find_one({"_id": doc["_id"]}) is not None
    assert stats(db, tour) == (0, 4.5)
    assert "Could not recompute ratings" in caplog.text
    assert refresh_tour_ratings(db, tour["_id"]) is None


def test_bulk_update_that_collides_midway_still_recomputes(db, tour, u1, u2):
    other = crud.create_one(db, tours, tour_payload(name="The Sea Explorer"))
    create_review(db, review(tour, u1, 5))
    create_review(db, review(tour, u2, 1))
    create_review(db, review(other, u1, 3))

    # moving both of tour's reviews onto (other, u2) breaks the one-review rule on the second
    with pytest.raises(Conflict):
        update_reviews(db, {"tour": tour["_id"]}, {"tour": str(other["_id"]), "user": str(u2["_id"])})

    for t in (tour, other):
        live = list(db["review"].find({"tour": t["_id"]}))
        assert stats(db, t)[0] == len(live)
    assert stats(db, other)[0] == 2


def test_failed_bulk_delete_still_recomputes(db, tour, u1, monkeypatch):
    create_review(db, review(tour, u1, 5))
    refreshed = []
    monkeypatch.setattr(review_writes, "refresh_tour_ratings", lambda db, tour_id: refreshed.append(tour_id))

    def timed_out(self, *args, **kwargs):
        raise NetworkTimeout("timed out")

    monkeypatch.setattr(mongomock.collection.Collection, "delete_many", timed_out)
    with pytest.raises(StorageError):
        delete_reviews(db, {"tour": tour["_id"]})
    assert refreshed == [tour["_id"]]
