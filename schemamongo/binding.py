from typing import Optional

from .errors import ConfigurationError
from .schema import Kind, Schema, boolean, date, string
from .validation import SchemaViews


class SchemaBinding:
    """The schema of one collection and the behaviours declared on it.

    Each ``with_*`` declaration extends the schema with its synthetic fields:

        with_dates        createdAt, updatedAt
        with_user         userId
        with_soft_delete  isDeleted (defaults to False), deletedAt
    """

    def __init__(self):
        self.schema: Optional[Schema] = None
        self.stamp_dates = False
        self.stamp_user = False
        self.soft_delete = False
        self._views: Optional[SchemaViews] = None

    @property
    def views(self) -> Optional[SchemaViews]:
        if self.schema is None:
            return None
        if self._views is None:
            self._views = SchemaViews.of(self.schema)
        return self._views

    def with_schema(self, schema: Schema) -> "SchemaBinding":
        if not isinstance(schema, Schema) or schema.kind is not Kind.DOCUMENT:
            raise ConfigurationError("SCHEMA_NOT_DOCUMENT", "with_schema() needs a document schema")
        self._set_schema(schema)
        return self

    def with_dates(self) -> "SchemaBinding":
        self._extend("with_dates", createdAt=date(), updatedAt=date())
        self.stamp_dates = True
        return self

    def with_user(self) -> "SchemaBinding":
        self._extend("with_user", userId=string(min_length=1))
        self.stamp_user = True
        return self

    def with_soft_delete(self) -> "SchemaBinding":
        self._extend("with_soft_delete", isDeleted=boolean().default(False), deletedAt=date().optional())
        self.soft_delete = True
        return self

    def _extend(self, declaration: str, **fields: Schema):
        if self.schema is None:
            raise ConfigurationError(
                "SCHEMA_NOT_DECLARED",
                f"{declaration}() called before with_schema(): there is no schema to extend")
        self._set_schema(self.schema.extend(fields))

    def _set_schema(self, schema: Schema):
        self.schema = schema
        self._views = None
