"""Schema-bound collections.

``SchemaCollection`` wraps a storage collection and runs every write through
the same pipeline before delegating it:

    stamp dates -> stamp user -> validate and rewrite -> storage

Each call works on its own copy of the caller's document or modifier, so a
rejected write leaves both the caller's arguments and storage untouched.
"""
import copy
import logging
from typing import Any, Dict, List, Optional, Tuple

from .binding import SchemaBinding
from .errors import ConfigurationError, InvalidDocumentError, InvalidUpdateError
from .hooks import WriteContext, WriteKind, WriteRequest, stamp_dates, stamp_user, utcnow
from .schema import Schema
from .store import Collection, UpdateResult
from .validation import validate_write

logger = logging.getLogger(__name__)

IDENTITY_COLLECTION = "users"
CREDENTIAL_SUBTREE = "services"


class SchemaCollection:
    """A storage collection whose inserts, updates and upserts must match a schema.

    Usage:
        tasks = SchemaCollection(db["tasks"])
        tasks.declare_schema(document({"title": string()})).enable_date_stamping()
        task_id = tasks.insert({"title": "write docs"})

    Args:
        collection: Storage collection writes are delegated to
        identity_collection: Name of the collection holding user accounts.
            Updates that touch the credential subtree (``services``) of its
            documents are never validated.
    """

    def __init__(self, collection: Collection, identity_collection: str = IDENTITY_COLLECTION):
        self._collection = collection
        self.name = collection.name
        self.binding = SchemaBinding()
        self._identity_collection = identity_collection

    @property
    def schema(self) -> Optional[Schema]:
        return self.binding.schema

    # ----- Declarations -----
    def declare_schema(self, schema: Schema) -> "SchemaCollection":
        self.binding.with_schema(schema)
        return self

    def enable_date_stamping(self) -> "SchemaCollection":
        self.binding.with_dates()
        return self

    def enable_user_stamping(self) -> "SchemaCollection":
        self.binding.with_user()
        return self

    def enable_soft_delete(self) -> "SchemaCollection":
        self.binding.with_soft_delete()
        return self

    # ----- Writes -----
    def insert(self, document: Dict[str, Any], *, skip_schema: bool = False,
               context: Optional[WriteContext] = None):
        """Insert ``document`` and return its ``_id``."""
        if not isinstance(document, dict):
            raise InvalidDocumentError("Document must be a dict.")
        request = WriteRequest(WriteKind.INSERT, document=copy.deepcopy(document),
                               options={"skip_schema": skip_schema})
        self._prepare(request, context)
        return self._collection.insert_one(request.document).inserted_id

    def update(self, filter, modifier: Dict[str, Any], *, upsert: bool = False, multi: bool = False,
               skip_schema: bool = False, context: Optional[WriteContext] = None) -> UpdateResult:
        if not isinstance(modifier, dict):
            raise InvalidDocumentError("Update must be a dict of operators.")
        if not modifier:
            raise InvalidUpdateError("Update must not be empty.")
        request = WriteRequest(WriteKind.UPSERT if upsert else WriteKind.UPDATE, filter=filter,
                               modifier=copy.deepcopy(modifier),
                               options={"skip_schema": skip_schema, "multi": multi})
        self._prepare(request, context)
        write = self._collection.update_many if multi else self._collection.update_one
        return write(request.filter, request.modifier, upsert=upsert)

    def upsert(self, filter, modifier: Dict[str, Any], *, multi: bool = False,
               skip_schema: bool = False, context: Optional[WriteContext] = None) -> UpdateResult:
        return self.update(filter, modifier, upsert=True, multi=multi,
                           skip_schema=skip_schema, context=context)

    def remove(self, filter, *, context: Optional[WriteContext] = None) -> int:
        """Remove matching documents and return how many were affected.

        With soft delete enabled the documents stay in storage, flagged with
        ``isDeleted`` and ``deletedAt``.
        """
        if self.binding.soft_delete:
            logger.info("Soft deleting from %s", self.name)
            result = self.update(filter, {"$set": {"isDeleted": True, "deletedAt": utcnow()}},
                                 multi=True, context=context)
            return result.matched_count
        return self._collection.delete_many(filter).deleted_count

    def recover(self, filter, *, context: Optional[WriteContext] = None) -> int:
        """Undo a soft delete and return how many documents matched."""
        if not self.binding.soft_delete:
            raise ConfigurationError("SOFT_DELETE_DISABLED", "Soft delete is not enabled for this collection.")
        logger.info("Recovering soft deleted documents in %s", self.name)
        result = self.update(filter, {"$unset": {"deletedAt": True}, "$set": {"isDeleted": False}},
                             multi=True, context=context)
        return result.matched_count

    # ----- Reads -----
    def find_one(self, filter=None) -> Optional[dict]:
        return self._collection.find_one(filter)

    def find(self, filter=None, sort: Optional[List[Tuple[str, int]]] = None,
             skip: int = 0, limit: int = 0) -> List[dict]:
        return self._collection.find(filter, sort=sort, skip=skip, limit=limit)

    def count_documents(self, filter=None) -> int:
        return self._collection.count_documents(filter)

    # ----- Pipeline -----
    def _prepare(self, request: WriteRequest, context: Optional[WriteContext]):
        if request.options.get("skip_schema"):
            logger.debug("Schema checks skipped on request for %s %s", request.kind.value, self.name)
            return
        if self.binding.schema is None:
            return
        if self._is_credential_update(request):
            logger.debug("Not validating credential update on %s", self.name)
            return
        if request.is_replacement and (self.binding.stamp_dates or self.binding.stamp_user):
            request.options["stored"] = self._collection.find_one(request.filter)
        if self.binding.stamp_dates:
            stamp_dates(request)
        if self.binding.stamp_user:
            stamp_user(request, context)
        validate_write(self.binding.views, request, self.name)

    def _is_credential_update(self, request: WriteRequest) -> bool:
        if request.is_insert or request.is_replacement or self.name != self._identity_collection:
            return False
        operand = next(iter(request.modifier.values()), None)
        if not isinstance(operand, dict) or not operand:
            return False
        first_path = next(iter(operand))
        return first_path.split(".")[0] == CREDENTIAL_SUBTREE
