import logging
import operator
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from storefront_experiments.core.errors import NotFoundError, StoreError
from storefront_experiments.models.orm.document import DocumentORM

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "in": lambda field_value, values: field_value in values,
}


def sanitize_key(key: str) -> str:
    """Document ids may not contain path separators (e.g. gid://shop/Product/1)."""
    return key.replace("/", "_")


def parse_document(model_cls: Type[ModelT], doc: Optional[dict]) -> Optional[ModelT]:
    """Validates a raw document; malformed documents are logged and rejected."""
    if doc is None:
        return None
    try:
        return model_cls.model_validate(doc)
    except PydanticValidationError as e:
        logger.warning(
            "Rejecting malformed %s document",
            model_cls.__name__,
            extra={"errors": e.errors(include_url=False)},
        )
        return None


def parse_documents(model_cls: Type[ModelT], docs: List[dict]) -> List[ModelT]:
    parsed = (parse_document(model_cls, doc) for doc in docs)
    return [item for item in parsed if item is not None]


class DocumentStore:
    """
    Keyed document persistence over a single SQLAlchemy table.

    Every document lives in a named collection under a string key. ``set`` is
    an upsert (last writer wins) and both ``set`` and ``update`` stamp a
    server-side ``updatedAt``.
    """

    def __init__(self, db: Session):
        self.db = db

    def _row(self, collection: str, key: str) -> Optional[DocumentORM]:
        return self.db.get(DocumentORM, {"collection": collection, "doc_id": sanitize_key(key)})

    def _fail(self, action: str, collection: str, error: SQLAlchemyError) -> StoreError:
        self.db.rollback()
        logger.error("Error %s document in %s: %s", action, collection, error)
        return StoreError(f"Document store failed while {action} {collection}")

    def get(self, collection: str, key: str) -> Optional[dict]:
        try:
            row = self._row(collection, key)
        except SQLAlchemyError as e:
            raise self._fail("reading", collection, e)
        return dict(row.data) if row is not None else None

    def get_all(self, collection: str) -> List[dict]:
        stmt = (
            select(DocumentORM)
            .where(DocumentORM.collection == collection)
            .order_by(DocumentORM.doc_id)
        )
        try:
            rows = self.db.scalars(stmt).all()
        except SQLAlchemyError as e:
            raise self._fail("listing", collection, e)
        return [dict(row.data) for row in rows]

    def set(self, collection: str, key: str, data: dict) -> None:
        now = datetime.now(timezone.utc)
        payload = {**data, "updatedAt": now.isoformat()}
        try:
            self._upsert(collection, key, payload, now)
        except IntegrityError:
            # A concurrent writer inserted the same key first; overwrite it
            self.db.rollback()
            try:
                self._upsert(collection, key, payload, now)
            except SQLAlchemyError as e:
                raise self._fail("writing", collection, e)
        except SQLAlchemyError as e:
            raise self._fail("writing", collection, e)

    def _upsert(self, collection: str, key: str, payload: dict, now: datetime) -> None:
        row = self._row(collection, key)
        if row is None:
            self.db.add(
                DocumentORM(
                    collection=collection,
                    doc_id=sanitize_key(key),
                    data=payload,
                    updated_at=now,
                )
            )
        else:
            row.data = payload
            row.updated_at = now
        self.db.commit()

    def update(self, collection: str, key: str, partial: dict) -> None:
        now = datetime.now(timezone.utc)
        try:
            row = self._row(collection, key)
            if row is None:
                raise NotFoundError(f"Document {collection}/{key}")
            # Reassign so the JSON column change is detected
            row.data = {**row.data, **partial, "updatedAt": now.isoformat()}
            row.updated_at = now
            self.db.commit()
        except SQLAlchemyError as e:
            raise self._fail("updating", collection, e)

    def delete(self, collection: str, key: str) -> None:
        try:
            row = self._row(collection, key)
            if row is not None:
                self.db.delete(row)
                self.db.commit()
        except SQLAlchemyError as e:
            raise self._fail("deleting", collection, e)

    def query_by_field(self, collection: str, field: str, op: str, value: Any) -> List[dict]:
        """Returns documents in ``collection`` whose ``field`` satisfies ``op value``."""
        if op not in OPERATORS:
            raise ValueError(f"Unsupported query operator: {op}")

        stmt = (
            select(DocumentORM)
            .where(DocumentORM.collection == collection)
            .order_by(DocumentORM.doc_id)
        )
        # String equality is pushed down to the database; everything else is
        # filtered after loading the collection.
        pushed_down = op == "==" and isinstance(value, str)
        if pushed_down:
            stmt = stmt.where(DocumentORM.data[field].as_string() == value)

        try:
            rows = self.db.scalars(stmt).all()
        except SQLAlchemyError as e:
            raise self._fail("querying", collection, e)

        docs = [dict(row.data) for row in rows]
        if pushed_down:
            return docs

        compare = OPERATORS[op]
        matched = []
        for doc in docs:
            if field not in doc:
                continue
            try:
                if compare(doc[field], value):
                    matched.append(doc)
            except TypeError:
                continue
        return matched
