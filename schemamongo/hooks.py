"""Write requests and the hooks that stamp them before validation."""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class WriteKind(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    UPSERT = "upsert"


@dataclass
class WriteContext:
    """Who is performing a write. ``user_id`` is None for anonymous writes."""
    user_id: Optional[str] = None


@dataclass
class WriteRequest:
    kind: WriteKind
    document: Optional[Dict[str, Any]] = None
    filter: Any = None
    modifier: Optional[Dict[str, Any]] = None
    options: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_insert(self) -> bool:
        return self.kind is WriteKind.INSERT

    @property
    def is_upsert(self) -> bool:
        return self.kind is WriteKind.UPSERT

    @property
    def is_replacement(self) -> bool:
        """An update whose modifier is a whole new document, not operators."""
        return (not self.is_insert and bool(self.modifier)
                and not any(key.startswith("$") for key in self.modifier))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)

def _operand(request: WriteRequest, op: str) -> Dict[str, Any]:
    return request.modifier.setdefault(op, {})

def _stored(request: WriteRequest) -> Dict[str, Any]:
    return request.options.get("stored") or {}

def stamp_dates(request: WriteRequest, now: Optional[datetime] = None):
    """Set ``createdAt`` on creation and ``updatedAt`` on every write.

    A replacement keeps the creation date of the document it replaces;
    ``options["stored"]`` holds that document when there is one.
    """
    now = now or utcnow()
    if request.is_insert:
        request.document["createdAt"] = now
        request.document["updatedAt"] = now
    elif request.is_replacement:
        request.modifier["createdAt"] = _stored(request).get("createdAt", now)
        request.modifier["updatedAt"] = now
    elif request.is_upsert:
        on_insert = _operand(request, "$setOnInsert")
        on_insert["createdAt"] = now
        on_insert["updatedAt"] = now
        fields = _operand(request, "$set")
        fields["updatedAt"] = now
        fields.pop("createdAt", None)
    else:
        fields = _operand(request, "$set")
        fields["updatedAt"] = now
        fields.pop("createdAt", None)

def stamp_user(request: WriteRequest, context: Optional[WriteContext]):
    user_id = context.user_id if context is not None else None
    # owner is fixed at creation
    if request.is_insert:
        if user_id:
            request.document["userId"] = user_id
    elif request.is_replacement:
        request.modifier.pop("userId", None)
        owner = _stored(request).get("userId", user_id)
        if owner:
            request.modifier["userId"] = owner
    else:
        request.modifier.get("$set", {}).pop("userId", None)
        if request.is_upsert and user_id:
            _operand(request, "$setOnInsert")["userId"] = user_id
