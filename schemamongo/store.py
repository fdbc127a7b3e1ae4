# store.py
"""A small MongoDB-compatible document store persisted in SQLite.

This is the storage primitive schema-bound collections delegate to. It knows
nothing about schemas: documents go in and out as plain dicts, serialised as
MongoDB extended JSON so that ids and dates survive the round trip.
"""
import copy
import logging
import os
import re
import sqlite3
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId, json_util

from .errors import DuplicateKeyError, InvalidQueryError, InvalidUpdateError, SchemaMongoError

logger = logging.getLogger(__name__)

_JSON_OPTIONS = json_util.JSONOptions(tz_aware=True, tzinfo=timezone.utc)
_MISSING = object()


# =========================
# Utils
# =========================
def generate_object_id() -> ObjectId:
    return ObjectId()

def dumps(doc: dict) -> str:
    return json_util.dumps(doc, json_options=_JSON_OPTIONS)

def loads(text: str) -> dict:
    return json_util.loads(text, json_options=_JSON_OPTIONS)

def _step(cur, part: str):
    if isinstance(cur, dict):
        return cur.get(part, _MISSING)
    if isinstance(cur, list) and part.isdigit():
        idx = int(part)
        return cur[idx] if idx < len(cur) else _MISSING
    return _MISSING

def deep_get(doc: dict, dotted_key: str, default=None):
    cur = doc
    for p in dotted_key.split("."):
        cur = _step(cur, p)
        if cur is _MISSING:
            return default
    return cur

def deep_set(doc: dict, dotted_key: str, value):
    parts = dotted_key.split(".")
    cur = doc
    for p in parts[:-1]:
        nxt = _step(cur, p)
        if not isinstance(nxt, (dict, list)):
            if isinstance(cur, list):
                raise InvalidUpdateError(f"Cannot create field '{p}' in array at '{dotted_key}'")
            cur[p] = nxt = {}
        cur = nxt
    last = parts[-1]
    if isinstance(cur, list):
        if not last.isdigit():
            raise InvalidUpdateError(f"Cannot create field '{last}' in array at '{dotted_key}'")
        idx = int(last)
        cur.extend([None] * (idx + 1 - len(cur)))
        cur[idx] = value
    else:
        cur[last] = value

def deep_unset(doc: dict, dotted_key: str):
    parts = dotted_key.split(".")
    cur = doc
    for p in parts[:-1]:
        cur = _step(cur, p)
        if not isinstance(cur, (dict, list)):
            return
    last = parts[-1]
    if isinstance(cur, dict):
        cur.pop(last, None)
    elif last.isdigit() and int(last) < len(cur):
        # arrays keep their length, like MongoDB
        cur[int(last)] = None

def is_array(x):
    return isinstance(x, list)

def normalize_filter(query) -> dict:
    """A bare id selects the document with that ``_id``."""
    if query is None:
        return {}
    if isinstance(query, dict):
        return query
    return {"_id": query}

def sort_key(value):
    """Order values across types the way MongoDB does."""
    if value is None:
        return (1,)
    if isinstance(value, bool):
        return (8, value)
    if isinstance(value, (int, float)):
        return (2, value)
    if isinstance(value, str):
        return (3, value)
    if isinstance(value, dict):
        return (4, tuple((k, sort_key(v)) for k, v in value.items()))
    if isinstance(value, list):
        return (5, tuple(sort_key(v) for v in value))
    if isinstance(value, ObjectId):
        return (7, str(value))
    if isinstance(value, datetime):
        return (9, value.timestamp())
    return (10, str(value))


# =========================
# Results (pymongo-like)
# =========================
class InsertOneResult:
    def __init__(self, inserted_id):
        self.inserted_id = inserted_id

class UpdateResult:
    def __init__(self, matched_count, modified_count, upserted_id=None):
        self.matched_count = matched_count
        self.modified_count = modified_count
        self.upserted_id = upserted_id

class DeleteResult:
    def __init__(self, deleted_count):
        self.deleted_count = deleted_count


# =========================
# Query engine
# =========================
COMPARATORS = {
    "$eq", "$ne", "$gt", "$gte", "$lt", "$lte",
    "$in", "$nin", "$exists", "$regex", "$size",
    "$all", "$elemMatch"
}
LOGICAL = {"$and", "$or", "$not"}

def match_query(doc: dict, query: dict) -> bool:
    if not isinstance(query, dict):
        raise InvalidQueryError("Query must be a dict.")
    for key, cond in query.items():
        if key in LOGICAL:
            if not _eval_logical(doc, key, cond):
                return False
        elif not _eval_field(doc, key, cond):
            return False
    return True

def _eval_logical(doc: dict, op: str, clauses):
    if op in {"$and", "$or"}:
        if not isinstance(clauses, list):
            raise InvalidQueryError(f"{op} requires a list of clauses.")
        results = [match_query(doc, clause) for clause in clauses]
        return all(results) if op == "$and" else any(results)
    if op == "$not":
        if not isinstance(clauses, dict):
            raise InvalidQueryError("$not requires a single clause object.")
        return not match_query(doc, clauses)
    raise InvalidQueryError(f"Unsupported logical operator: {op}")

def _is_operator_doc(cond) -> bool:
    return isinstance(cond, dict) and bool(cond) and all(k.startswith("$") for k in cond)

def _eval_field(doc: dict, dotted_key: str, cond):
    value = deep_get(doc, dotted_key, None)
    if _is_operator_doc(cond):
        for op, arg in cond.items():
            if op not in COMPARATORS:
                raise InvalidQueryError(f"Unsupported operator: {op}")
            if not _eval_op(value, op, arg):
                return False
        return True
    # an array field matches when any element equals the condition
    return value == cond or (is_array(value) and cond in value)

def _eval_op(val, op, arg):
    try:
        if op == "$eq": return val == arg or (is_array(val) and arg in val)
        if op == "$ne": return val != arg
        if op == "$gt": return val is not None and val > arg
        if op == "$gte": return val is not None and val >= arg
        if op == "$lt": return val is not None and val < arg
        if op == "$lte": return val is not None and val <= arg
    except TypeError:
        # values of different types never compare
        return False
    if op == "$in": return val in arg or (is_array(val) and any(v in arg for v in val))
    if op == "$nin": return val not in arg
    if op == "$exists": return (val is not None) if arg else (val is None)
    if op == "$regex":
        if val is None or not isinstance(val, str):
            return False
        pattern, flags = _parse_regex(arg)
        return re.search(pattern, val, flags) is not None
    if op == "$size":
        if not is_array(val):
            return False
        return len(val) == arg
    if op == "$all":
        if not is_array(val):
            return False
        return all(item in val for item in arg)
    if op == "$elemMatch":
        if not is_array(val):
            return False
        return any(match_query(elem, arg) if isinstance(elem, dict) else _match_scalar(elem, arg) for elem in val)
    return False

def _match_scalar(x, spec):
    if not isinstance(spec, dict):
        return x == spec
    try:
        for sop, sarg in spec.items():
            if sop == "$eq" and x == sarg: return True
            if sop == "$ne" and x != sarg: return True
            if sop == "$gt" and x > sarg: return True
            if sop == "$gte" and x >= sarg: return True
            if sop == "$lt" and x < sarg: return True
            if sop == "$lte" and x <= sarg: return True
            if sop == "$in" and x in sarg: return True
            if sop == "$nin" and x not in sarg: return True
    except TypeError:
        return False
    return False

def _parse_regex(arg):
    if isinstance(arg, str):
        return arg, 0
    if isinstance(arg, dict):
        pattern = arg.get("pattern", "")
        options = arg.get("options", "")
        flags = 0
        if "i" in options: flags |= re.IGNORECASE
        if "m" in options: flags |= re.MULTILINE
        if "s" in options: flags |= re.DOTALL
        return pattern, flags
    raise InvalidQueryError("$regex must be a string or dict {pattern, options}.")

def equality_fields(query: dict) -> Dict[str, Any]:
    """Fields an upsert copies from its filter into the new document."""
    seeds = {}
    for key, cond in query.items():
        if key.startswith("$"):
            continue
        if not _is_operator_doc(cond):
            seeds[key] = cond
        elif list(cond) == ["$eq"]:
            seeds[key] = cond["$eq"]
    return seeds


# =========================
# Update engine
# =========================
POSITIONAL = re.compile(r"^\$(\[[^\]]*\])?$")

def _check_path(op: str, key: str):
    if any(POSITIONAL.match(part) for part in key.split(".")):
        raise InvalidUpdateError(f"{op}: positional operators are not supported ({key})")

def _array_at(doc: dict, key: str, op: str) -> list:
    arr = deep_get(doc, key, None)
    if arr is None:
        return []
    if not is_array(arr):
        raise InvalidUpdateError(f"{op} requires array field: {key}")
    return arr

def _sort_array(arr: list, spec):
    if isinstance(spec, dict):
        for field, direction in reversed(list(spec.items())):
            arr.sort(key=lambda d: sort_key(deep_get(d, field) if isinstance(d, dict) else None),
                     reverse=direction < 0)
    else:
        arr.sort(key=sort_key, reverse=spec < 0)

def _push_each(arr: list, spec: dict):
    """$push with modifiers: insert at $position, then $sort, then $slice."""
    items = spec["$each"]
    if not is_array(items):
        raise InvalidUpdateError("$each requires an array")
    position = spec.get("$position")
    if position is None:
        arr.extend(items)
    else:
        if position < 0:
            position = max(len(arr) + position, 0)
        arr[position:position] = items
    if "$sort" in spec:
        _sort_array(arr, spec["$sort"])
    if "$slice" in spec:
        n = spec["$slice"]
        arr[:] = arr[:n] if n >= 0 else arr[n:]

def _pull_matches(item, cond) -> bool:
    if _is_operator_doc(cond):
        return _match_scalar(item, cond)
    if isinstance(cond, dict):
        return isinstance(item, dict) and match_query(item, cond)
    return item == cond

def apply_update(doc: dict, update: dict, is_upsert: bool = False) -> dict:
    if not isinstance(update, dict):
        raise InvalidUpdateError("Update must be a dict of operators.")
    operators = [k for k in update if k.startswith("$")]
    if not operators:
        replacement = copy.deepcopy(update)
        replacement["_id"] = doc.get("_id")
        return replacement
    if len(operators) != len(update):
        raise InvalidUpdateError("Update cannot mix operators and plain fields.")

    new_doc = copy.deepcopy(doc)
    for op, changes in update.items():
        if not isinstance(changes, dict):
            raise InvalidUpdateError(f"{op} requires a document of fields.")
        for k in changes:
            _check_path(op, k)
        if op == "$set":
            for k, v in changes.items():
                deep_set(new_doc, k, copy.deepcopy(v))
        elif op == "$unset":
            for k in changes.keys():
                deep_unset(new_doc, k)
        elif op in ("$inc", "$mul"):
            for k, v in changes.items():
                cur = deep_get(new_doc, k, None)
                if cur is None:
                    deep_set(new_doc, k, v if op == "$inc" else 0 * v)
                    continue
                if not isinstance(cur, (int, float)) or isinstance(cur, bool):
                    raise InvalidUpdateError(f"{op} requires numeric field: {k}")
                deep_set(new_doc, k, cur + v if op == "$inc" else cur * v)
        elif op in ("$min", "$max"):
            for k, v in changes.items():
                cur = deep_get(new_doc, k, _MISSING)
                if cur is _MISSING:
                    deep_set(new_doc, k, v)
                elif (sort_key(v) < sort_key(cur)) if op == "$min" else (sort_key(v) > sort_key(cur)):
                    deep_set(new_doc, k, v)
        elif op == "$currentDate":
            now = datetime.now(timezone.utc)
            for k in changes:
                deep_set(new_doc, k, now)
        elif op == "$rename":
            for old, new in changes.items():
                val = deep_get(new_doc, old, _MISSING)
                if val is not _MISSING:
                    deep_unset(new_doc, old)
                    deep_set(new_doc, new, val)
        elif op == "$push":
            for k, v in changes.items():
                arr = _array_at(new_doc, k, op)
                if isinstance(v, dict) and "$each" in v:
                    _push_each(arr, copy.deepcopy(v))
                else:
                    arr.append(copy.deepcopy(v))
                deep_set(new_doc, k, arr)
        elif op == "$addToSet":
            for k, v in changes.items():
                arr = _array_at(new_doc, k, op)
                items = v["$each"] if isinstance(v, dict) and "$each" in v else [v]
                for item in items:
                    if item not in arr:
                        arr.append(copy.deepcopy(item))
                deep_set(new_doc, k, arr)
        elif op == "$pop":
            for k, v in changes.items():
                if v not in (1, -1) or isinstance(v, bool):
                    raise InvalidUpdateError("$pop value must be 1 or -1")
                arr = _array_at(new_doc, k, op)
                if arr:
                    if v == 1: arr.pop()         # last
                    else: arr.pop(0)             # first
                deep_set(new_doc, k, arr)
        elif op == "$pull":
            for k, v in changes.items():
                arr = _array_at(new_doc, k, op)
                deep_set(new_doc, k, [x for x in arr if not _pull_matches(x, v)])
        elif op == "$pullAll":
            for k, v in changes.items():
                arr = _array_at(new_doc, k, op)
                deep_set(new_doc, k, [x for x in arr if x not in v])
        elif op == "$setOnInsert":
            if is_upsert:
                for k, v in changes.items():
                    deep_set(new_doc, k, copy.deepcopy(v))
        else:
            raise InvalidUpdateError(f"Unsupported update operator: {op}")
    return new_doc


# =========================
# Collection
# =========================
CREATE_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS "{table}" (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    _id TEXT UNIQUE,
    document TEXT NOT NULL
);
"""

class Collection:
    def __init__(self, conn: sqlite3.Connection, name: str):
        self.conn = conn
        self.name = name
        self.conn.execute(CREATE_TABLE_SQL.format(table=self.name))
        self.conn.commit()

    def _rows(self) -> List[Tuple[int, dict]]:
        return [(rid, loads(doc)) for rid, doc in self.conn.execute(f'SELECT id, document FROM "{self.name}"')]

    def _matching(self, query) -> List[Tuple[int, dict]]:
        query = normalize_filter(query)
        return [(rid, doc) for rid, doc in self._rows() if match_query(doc, query)]

    def _write(self, rid: int, doc: dict):
        self.conn.execute(f'UPDATE "{self.name}" SET _id = ?, document = ? WHERE id = ?',
                          (str(doc["_id"]), dumps(doc), rid))

    # ----- Insert -----
    def insert_one(self, document: dict) -> InsertOneResult:
        try:
            doc = dict(document)
            if "_id" not in doc:
                doc["_id"] = generate_object_id()
            self.conn.execute(f'INSERT INTO "{self.name}" (_id, document) VALUES (?, ?)', (str(doc["_id"]), dumps(doc)))
            self.conn.commit()
            logger.debug("Inserted %s into %s", doc["_id"], self.name)
            return InsertOneResult(doc["_id"])
        except sqlite3.IntegrityError as e:
            raise DuplicateKeyError(f"Duplicate _id detected: {doc['_id']}") from e
        except sqlite3.Error as e:
            raise SchemaMongoError(f"Insert failed: {e}") from e

    # ----- Find -----
    def find_one(self, query=None) -> Optional[dict]:
        try:
            matched = self._matching(query)
        except sqlite3.Error as e:
            raise SchemaMongoError(f"Find one failed: {e}") from e
        return matched[0][1] if matched else None

    def find(self, query=None, sort: Optional[List[Tuple[str, int]]] = None,
             skip: int = 0, limit: int = 0) -> List[dict]:
        try:
            docs = [doc for _, doc in self._matching(query)]
        except sqlite3.Error as e:
            raise SchemaMongoError(f"Find failed: {e}") from e
        for key, direction in reversed(sort or []):
            docs.sort(key=lambda d: sort_key(deep_get(d, key, None)), reverse=direction < 0)
        if skip > 0:
            docs = docs[skip:]
        if limit > 0:
            docs = docs[:limit]
        return docs

    def count_documents(self, query=None) -> int:
        return len(self.find(query))

    # ----- Delete -----
    def delete_one(self, query) -> DeleteResult:
        return self._delete(query, multi=False)

    def delete_many(self, query) -> DeleteResult:
        return self._delete(query, multi=True)

    def _delete(self, query, multi: bool) -> DeleteResult:
        try:
            matched = self._matching(query)
            if not multi:
                matched = matched[:1]
            for rid, _ in matched:
                self.conn.execute(f'DELETE FROM "{self.name}" WHERE id = ?', (rid,))
            self.conn.commit()
            logger.debug("Deleted %d document(s) from %s", len(matched), self.name)
            return DeleteResult(len(matched))
        except sqlite3.Error as e:
            raise SchemaMongoError(f"Delete failed: {e}") from e

    # ----- Update -----
    def update_one(self, query, update: dict, upsert: bool = False) -> UpdateResult:
        return self._update(query, update, upsert=upsert, multi=False)

    def update_many(self, query, update: dict, upsert: bool = False) -> UpdateResult:
        return self._update(query, update, upsert=upsert, multi=True)

    def _update(self, query, update: dict, upsert: bool, multi: bool) -> UpdateResult:
        try:
            matched = self._matching(query)
            if not multi:
                matched = matched[:1]
            modified = 0
            for rid, doc in matched:
                new_doc = apply_update(doc, update, is_upsert=False)
                if new_doc != doc:
                    modified += 1
                    self._write(rid, new_doc)
            if matched or not upsert:
                self.conn.commit()
                return UpdateResult(matched_count=len(matched), modified_count=modified)

            base_doc = {}
            for k, v in equality_fields(normalize_filter(query)).items():
                deep_set(base_doc, k, copy.deepcopy(v))
            base_doc.setdefault("_id", generate_object_id())
            upserted = apply_update(base_doc, update, is_upsert=True)
            upserted.setdefault("_id", base_doc["_id"])
            self.insert_one(upserted)
            return UpdateResult(matched_count=0, modified_count=0, upserted_id=upserted["_id"])
        except sqlite3.IntegrityError as e:
            raise DuplicateKeyError(f"Update would duplicate an _id: {e}") from e
        except sqlite3.Error as e:
            raise SchemaMongoError(f"Update failed: {e}") from e


# =========================
# Database and Client
# =========================
class Database:
    def __init__(self, db_path: str):
        self.conn = sqlite3.connect(db_path, isolation_level=None, check_same_thread=False)
        self.collections = {}

    def __getitem__(self, coll_name: str) -> Collection:
        if coll_name not in self.collections:
            self.collections[coll_name] = Collection(self.conn, coll_name)
        return self.collections[coll_name]

    def list_collection_names(self) -> List[str]:
        return list(self.collections.keys())

    def close(self):
        self.conn.close()

class Client:
    """
    Top-level client similar to pymongo.MongoClient.
    Usage:
        client = Client()
        db = client["my_db"]
        coll = db["my_coll"]

    Databases live in ``base_dir`` (default: $SCHEMAMONGO_DATA_DIR, else the
    current directory) as ``<name>.db`` files.
    """
    def __init__(self, base_dir: Optional[str] = None):
        self.base_dir = base_dir or os.getenv("SCHEMAMONGO_DATA_DIR", ".")
        self.databases = {}

    def __getitem__(self, db_name: str) -> Database:
        if db_name not in self.databases:
            db_path = os.path.join(self.base_dir, f"{db_name}.db")
            self.databases[db_name] = Database(db_path)
        return self.databases[db_name]

    def close(self):
        for db in self.databases.values():
            db.close()
        self.databases.clear()
