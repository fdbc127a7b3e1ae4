import pytest

from schemamongo import Database, SchemaCollection


@pytest.fixture
def db():
    database = Database(":memory:")
    yield database
    database.close()


@pytest.fixture
def make_collection(db):
    """Build a schema-bound collection on a fresh in-memory table."""
    def factory(name="test"):
        return SchemaCollection(db[name])
    return factory
