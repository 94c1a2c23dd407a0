"""
Collection handles for each entity.

A Model bundles everything the generic CRUD executor needs to know about an
entity: its pydantic schema, the filter every read applies (secret tours and
inactive users stay hidden), fields that are never serialized or never taken
from a client payload, its references to other collections, and the basic
storage capabilities (create, find_by_id, find_by_id_and_update,
find_by_id_and_delete, find).
"""
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Type, Union, get_args, get_origin

from bson import ObjectId
from passlib.context import CryptContext
from pydantic import BaseModel, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from pymongo import ReturnDocument
from pymongo.database import Database

from api_features import VERSION_KEY, QuerySpec
from errors import BadRequest, ValidationError, storage_errors
from schemas import Review, Tour, User, UserCreate, as_naive_utc, to_object_id

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

_REGISTRY: Dict[str, "Model"] = {}
_UNCHECKED = object()
_SCALARS = (bool, int, float, datetime)
_TRUE = {"true", "1", "yes"}
_FALSE = {"false", "0", "no"}


def jsonable(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, dict):
        return {k: jsonable(v) for k, v in value.items()}
    if isinstance(value, list):
        return [jsonable(v) for v in value]
    return value


def _unwrap(annotation: Any) -> Any:
    """Optional[List[X]] -> X"""
    while True:
        origin = get_origin(annotation)
        args = [a for a in get_args(annotation) if a is not type(None)]
        if origin is Union and len(args) == 1:
            annotation = args[0]
        elif origin in (list, List, tuple, set) and args:
            annotation = args[0]
        else:
            return annotation


class Relation:
    """Reference from one collection to another.

    A forward relation keeps the target ids on this document (``guides``); a
    reverse relation finds target documents whose ``foreign_field`` holds this
    document's id (a tour's ``reviews``).
    """

    def __init__(self, model: str, foreign_field: str = "_id", select: Sequence[str] = (), populate: Sequence[str] = ()):
        self.model = model
        self.foreign_field = foreign_field
        self.select = tuple(select)
        self.populate = tuple(populate)

    @property
    def reverse(self) -> bool:
        return self.foreign_field != "_id"


class Model:
    def __init__(
        self,
        name: str,
        schema: Type[BaseModel],
        create_schema: Optional[Type[BaseModel]] = None,
        prepare: Optional[Callable[[BaseModel], Dict[str, Any]]] = None,
        default_filter: Optional[Dict[str, Any]] = None,
        hidden_fields: Iterable[str] = (),
        readonly_fields: Iterable[str] = (),
        create_only_fields: Iterable[str] = (),
        references: Iterable[str] = (),
        relations: Optional[Dict[str, Relation]] = None,
        soft_delete_field: Optional[str] = None,
    ):
        self.name = name
        self.schema = schema
        self.create_schema = create_schema or schema
        self.prepare = prepare
        self.default_filter = dict(default_filter or {})
        self.hidden_fields = frozenset(hidden_fields)
        self.readonly_fields = frozenset(readonly_fields) | {"_id", "id", VERSION_KEY}
        self.create_only_fields = frozenset(create_only_fields)
        self.references = frozenset(references)
        self.relations = relations or {}
        self.soft_delete_field = soft_delete_field
        _REGISTRY[name] = self

    def __repr__(self):
        return f"Model({self.name!r})"

    def collection(self, db: Database):
        return db[self.name]

    def scoped(self, query: Dict[str, Any]) -> Dict[str, Any]:
        """AND the entity's default filter onto ``query``."""
        if not self.default_filter:
            return query
        if not query:
            return dict(self.default_filter)
        return {"$and": [self.default_filter, query]}

    # -- payloads -------------------------------------------------------

    def clean_payload(self, payload: Dict[str, Any], creating: bool) -> Dict[str, Any]:
        blocked = self.readonly_fields if creating else self.readonly_fields | self.create_only_fields
        dropped = [k for k in payload if k in blocked]
        if dropped:
            logger.debug("Dropping read-only fields %s from %s payload", dropped, self.name)
        return {k: v for k, v in payload.items() if k not in blocked}

    def validate_create(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            obj = self.create_schema.model_validate(payload)
            data = self.prepare(obj) if self.prepare else obj.model_dump()
        except PydanticValidationError as exc:
            raise ValidationError.from_pydantic(exc) from exc
        return self.to_document(data)

    def validate_document(self, document: Dict[str, Any]) -> Dict[str, Any]:
        try:
            obj = self.schema.model_validate(document)
        except PydanticValidationError as exc:
            raise ValidationError.from_pydantic(exc) from exc
        return self.to_document(obj.model_dump())

    def to_document(self, data: Dict[str, Any]) -> Dict[str, Any]:
        doc = dict(data)
        for field in self.references:
            value = doc.get(field)
            if isinstance(value, list):
                doc[field] = [to_object_id(v) for v in value]
            elif value is not None:
                doc[field] = to_object_id(value)
        return doc

    def sanitize(self, doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if not doc:
            return doc
        d = {k: v for k, v in doc.items() if k not in self.hidden_fields and k != VERSION_KEY}
        if "_id" in d:
            d = {"id": str(d.pop("_id")), **d}
        return jsonable(d)

    # -- query parameter support ---------------------------------------

    def _annotation(self, path: str) -> Any:
        schema: Any = self.schema
        annotation: Any = None
        for part in path.split("."):
            if not (isinstance(schema, type) and issubclass(schema, BaseModel)):
                return None
            field = schema.model_fields.get(part)
            if field is None:
                return None
            annotation = _unwrap(field.annotation)
            schema = annotation
        return annotation

    def is_queryable(self, path: str) -> bool:
        if path.split(".")[0] in self.hidden_fields:
            return False
        return path == "_id" or self._annotation(path) is not None

    def coerce(self, path: str, raw: Any) -> Any:
        if path == "_id" or path in self.references:
            oid = to_object_id(raw)
            if oid is None:
                raise BadRequest(f"Invalid {path}: {raw}")
            return oid
        annotation = self._annotation(path)
        if annotation not in _SCALARS:
            return raw
        if annotation is bool and isinstance(raw, str):
            lowered = raw.strip().lower()
            if lowered in _TRUE:
                return True
            if lowered in _FALSE:
                return False
            raise BadRequest(f"Invalid {path}: {raw}")
        try:
            value = TypeAdapter(annotation).validate_python(raw)
        except PydanticValidationError as exc:
            raise BadRequest(f"Invalid {path}: {raw}") from exc
        if isinstance(value, datetime):
            value = as_naive_utc(value)
        return value

    # -- storage capabilities ------------------------------------------

    def create(self, db: Database, document: Dict[str, Any]) -> Dict[str, Any]:
        doc = {**document, VERSION_KEY: 0}
        with storage_errors():
            doc["_id"] = self.collection(db).insert_one(doc).inserted_id
        return doc

    def find_by_id(self, db: Database, obj_id: Any, projection: Optional[Dict[str, int]] = None) -> Optional[Dict[str, Any]]:
        oid = to_object_id(obj_id)
        if oid is None:
            return None
        with storage_errors():
            return self.collection(db).find_one(self.scoped({"_id": oid}), projection)

    def find_by_id_and_update(
        self, db: Database, obj_id: Any, changes: Dict[str, Any], expected_version: Any = _UNCHECKED
    ) -> Optional[Dict[str, Any]]:
        """Atomic ``$set`` guarded by the revision marker when one is given."""
        oid = to_object_id(obj_id)
        if oid is None:
            return None
        query: Dict[str, Any] = {"_id": oid}
        if expected_version is not _UNCHECKED:
            query[VERSION_KEY] = expected_version
        with storage_errors():
            return self.collection(db).find_one_and_update(
                self.scoped(query),
                {"$set": changes, "$inc": {VERSION_KEY: 1}},
                return_document=ReturnDocument.AFTER,
            )

    def find_by_id_and_delete(self, db: Database, obj_id: Any) -> Optional[Dict[str, Any]]:
        oid = to_object_id(obj_id)
        if oid is None:
            return None
        with storage_errors():
            if self.soft_delete_field:
                return self.collection(db).find_one_and_update(
                    self.scoped({"_id": oid}),
                    {"$set": {self.soft_delete_field: False}, "$inc": {VERSION_KEY: 1}},
                    return_document=ReturnDocument.AFTER,
                )
            return self.collection(db).find_one_and_delete(self.scoped({"_id": oid}))

    def find(self, db: Database, spec: QuerySpec) -> List[Dict[str, Any]]:
        """Run a QuerySpec. The spec's filter must already include the default filter."""
        with storage_errors():
            cursor = self.collection(db).find(spec.filter, spec.projection)
            if spec.sort:
                cursor = cursor.sort(spec.sort)
            return list(cursor.skip(spec.skip).limit(spec.limit))

    def count(self, db: Database, query: Dict[str, Any]) -> int:
        with storage_errors():
            return self.collection(db).count_documents(query)

    def where(self, db: Database, query: Dict[str, Any], select: Sequence[str] = ()) -> List[Dict[str, Any]]:
        projection = {f: 1 for f in select} if select else {VERSION_KEY: 0}
        with storage_errors():
            return list(self.collection(db).find(self.scoped(query), projection))


def get_model(name: str) -> Model:
    return _REGISTRY[name]


# -- users ------------------------------------------------------------

def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def prepare_user(payload: UserCreate) -> Dict[str, Any]:
    data = payload.model_dump(exclude={"password_confirm"})
    data["password"] = hash_password(payload.password)
    return User.model_validate(data).model_dump()


# -- entities ---------------------------------------------------------

tours = Model(
    "tour",
    Tour,
    default_filter={"secret_tour": {"$ne": True}},
    readonly_fields=("ratings_average", "ratings_quantity", "slug", "created_at"),
    references=("guides",),
    relations={
        "guides": Relation("user", select=("name", "email", "photo", "role")),
        "reviews": Relation("review", foreign_field="tour", populate=("user",)),
    },
)

reviews = Model(
    "review",
    Review,
    readonly_fields=("created_at",),
    references=("tour", "user"),
    relations={
        "tour": Relation("tour", select=("name",)),
        "user": Relation("user", select=("name", "photo")),
    },
)

users = Model(
    "user",
    User,
    create_schema=UserCreate,
    prepare=prepare_user,
    default_filter={"active": {"$ne": False}},
    hidden_fields=("password", "password_confirm", "password_reset_token", "password_reset_expires", "active"),
    readonly_fields=("password_changed_at", "password_reset_token", "password_reset_expires", "active"),
    create_only_fields=("password", "password_confirm"),
    soft_delete_field="active",
)
