"""
Database Schemas for the Tours API

MongoDB collections are defined below using Pydantic models. Each class name is
converted to lowercase for the collection name (Tour -> "tour").

We will use these collections:
- tour: bookable tours, carrying rating statistics derived from reviews
- review: one review per user per tour
- user: customers, guides and admins (soft deleted through ``active``)

References between collections are 24-hex ObjectId strings here and are stored
as ObjectIds by models.py.
"""

import re
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Literal, Optional

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

Difficulty = Literal["easy", "medium", "difficult"]
Role = Literal["user", "guide", "lead-guide", "admin"]

DEFAULT_RATINGS_AVERAGE = 4.5
DEFAULT_RATINGS_QUANTITY = 0


def utcnow() -> datetime:
    # pymongo hands back naive UTC datetimes, keep new values comparable
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def round_rating(value: float) -> float:
    """Round half up to one decimal place (4.25 -> 4.3)."""
    return float(Decimal(str(value)).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))


def slugify(text: str) -> str:
    slug = re.sub(r"[^\w\s-]", "", text.lower())
    return re.sub(r"[\s_-]+", "-", slug).strip("-")


def to_object_id(value) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    if isinstance(value, str) and len(value) == 24 and ObjectId.is_valid(value):
        return ObjectId(value)
    return None


def check_object_id(value) -> str:
    oid = to_object_id(value)
    if oid is None:
        raise ValueError(f"Invalid id: {value}")
    return str(oid)


class Location(BaseModel):
    """GeoJSON point, coordinates are [longitude, latitude]."""
    type: Literal["Point"] = Field("Point")
    coordinates: List[float] = Field(default_factory=list)
    address: Optional[str] = None
    description: Optional[str] = None

    @field_validator("coordinates")
    @classmethod
    def lng_lat_pair(cls, v: List[float]) -> List[float]:
        if v and len(v) != 2:
            raise ValueError("Coordinates must be [longitude, latitude]")
        if v and not (-180 <= v[0] <= 180 and -90 <= v[1] <= 90):
            raise ValueError("Coordinates out of range")
        return v


class Waypoint(Location):
    day: Optional[int] = Field(None, ge=0, description="Day of the tour the stop happens on")


class Tour(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(..., min_length=10, max_length=40, description="Unique tour name")
    slug: Optional[str] = Field(None, description="Derived from name")
    duration: int = Field(..., ge=1, description="Length in days")
    max_group_size: int = Field(..., ge=1)
    difficulty: Difficulty
    ratings_average: float = Field(DEFAULT_RATINGS_AVERAGE, ge=1, le=5)
    ratings_quantity: int = Field(DEFAULT_RATINGS_QUANTITY, ge=0)
    price: float = Field(..., ge=0)
    price_discount: Optional[float] = Field(None, ge=0)
    summary: str = Field(..., min_length=1)
    description: Optional[str] = None
    image_cover: str = Field(..., min_length=1, description="Cover image file name")
    images: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    start_dates: List[datetime] = Field(default_factory=list)
    secret_tour: bool = False
    start_location: Optional[Location] = None
    locations: List[Waypoint] = Field(default_factory=list)
    guides: List[str] = Field(default_factory=list, description="User ids")

    @field_validator("ratings_average")
    @classmethod
    def round_average(cls, v: float) -> float:
        return round_rating(v)

    @field_validator("price_discount")
    @classmethod
    def discount_below_price(cls, v: Optional[float], info) -> Optional[float]:
        # info.data only holds price when price itself validated
        price = info.data.get("price")
        if v is not None and price is not None and v >= price:
            raise ValueError(f"Discount price ({v:g}) should be below the regular price")
        return v

    @field_validator("created_at")
    @classmethod
    def created_naive(cls, v: datetime) -> datetime:
        return as_naive_utc(v)

    @field_validator("start_dates")
    @classmethod
    def start_dates_naive(cls, v: List[datetime]) -> List[datetime]:
        return [as_naive_utc(d) for d in v]

    @field_validator("guides", mode="before")
    @classmethod
    def guide_ids(cls, v):
        return [check_object_id(g) for g in v or []]

    @model_validator(mode="after")
    def set_slug(self):
        self.slug = slugify(self.name)
        return self


class Review(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    review: str = Field(..., min_length=1, description="Review can not be empty")
    rating: float = Field(..., ge=1, le=5)
    created_at: datetime = Field(default_factory=utcnow)
    tour: str = Field(..., description="Tour id the review belongs to")
    user: str = Field(..., description="User id of the author")

    @field_validator("tour", "user", mode="before")
    @classmethod
    def reference_ids(cls, v):
        return check_object_id(v)

    @field_validator("created_at")
    @classmethod
    def created_naive(cls, v: datetime) -> datetime:
        return as_naive_utc(v)


class User(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(..., min_length=1)
    email: EmailStr
    photo: str = Field("default.jpg")
    role: Role = Field("user")
    password: str = Field(..., min_length=8, description="BCrypt hash of password")
    password_changed_at: Optional[datetime] = None
    password_reset_token: Optional[str] = None
    password_reset_expires: Optional[datetime] = None
    active: bool = True

    @field_validator("email")
    @classmethod
    def lowercase_email(cls, v: str) -> str:
        return v.lower()


class UserCreate(BaseModel):
    """Payload accepted when creating a user, before the password is hashed."""
    name: str = Field(..., min_length=1)
    email: EmailStr
    photo: str = Field("default.jpg")
    role: Role = Field("user")
    password: str = Field(..., min_length=8)
    password_confirm: str

    @field_validator("email")
    @classmethod
    def lowercase_email(cls, v: str) -> str:
        return v.lower()

    @model_validator(mode="after")
    def passwords_match(self):
        if self.password != self.password_confirm:
            raise ValueError("Passwords are not the same")
        return self
