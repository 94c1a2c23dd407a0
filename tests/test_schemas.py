import pytest
from bson import ObjectId

import crud
import models
from conftest import tour_payload
from errors import ValidationError
from models import tours, users
from schemas import Tour, check_object_id, round_rating, slugify, to_object_id


def test_every_violated_rule_is_reported(db):
    payload = tour_payload(name="Short", difficulty="hard", price=100, price_discount=150, max_group_size=0)
    with pytest.raises(ValidationError) as exc:
        crud.create_one(db, tours, payload)
    fields = {e["field"] for e in exc.value.errors}
    assert fields == {"name", "difficulty", "price_discount", "max_group_size"}
    assert db["tour"].count_documents({}) == 0


def test_discount_equal_to_price_is_rejected(db):
    with pytest.raises(ValidationError) as exc:
        crud.create_one(db, tours, tour_payload(price=100, price_discount=100))
    assert "below the regular price" in exc.value.errors[0]["message"]


def test_missing_required_fields(db):
    with pytest.raises(ValidationError) as exc:
        crud.create_one(db, tours, {"name": "The Wine Taster"})
    fields = {e["field"] for e in exc.value.errors}
    assert {"duration", "max_group_size", "difficulty", "price", "summary", "image_cover"} <= fields


def test_name_is_trimmed_and_bounded():
    tour = Tour.model_validate(tour_payload(name="   The Park Camper   "))
    assert tour.name == "The Park Camper"
    with pytest.raises(Exception):
        Tour.model_validate(tour_payload(name="x" * 41))


def test_locations_need_lng_lat_pairs():
    with pytest.raises(Exception):
        Tour.model_validate(tour_payload(start_location={"coordinates": [-80.18]}))
    tour = Tour.model_validate(tour_payload(
        start_location={"coordinates": [-80.185942, 25.774772], "address": "301 Biscayne Blvd, Miami"},
        locations=[{"coordinates": [-80.128473, 25.781842], "day": 1}],
    ))
    assert tour.start_location.type == "Point"
    assert tour.locations[0].day == 1


@pytest.mark.parametrize("value,expected", [(4.25, 4.3), (4.666666, 4.7), (3.0, 3.0), (4.04, 4.0)])
def test_round_rating(value, expected):
    assert round_rating(value) == expected


def test_slugify():
    assert slugify("The Northern Lights!") == "the-northern-lights"


def test_user_passwords_must_match(db):
    with pytest.raises(ValidationError) as exc:
        crud.create_one(db, users, {
            "name": "Ayla Cornell",
            "email": "ayla@natours.io",
            "password": "pass1234",
            "password_confirm": "pass4321",
        })
    assert "Passwords are not the same" in exc.value.message


def test_user_email_and_role_rules(db):
    with pytest.raises(ValidationError) as exc:
        crud.create_one(db, users, {
            "name": "Ayla Cornell",
            "email": "not-an-email",
            "role": "owner",
            "password": "short",
            "password_confirm": "short",
        })
    assert {e["field"] for e in exc.value.errors} == {"email", "role", "password"}


def test_reference_ids_share_one_check():
    oid = ObjectId()
    assert check_object_id(oid) == str(oid)
    assert check_object_id(str(oid).upper()) == str(oid)
    assert to_object_id("not-an-id") is None
    assert to_object_id("z" * 24) is None
    with pytest.raises(ValueError):
        check_object_id("5c88fa8cf4afda39709c29")
    assert models.to_object_id is to_object_id
