"""
Pytest configuration and fixtures for demo_seed tests

Provides an in-memory fake org behind recording REST and Bulk API doubles, so
engine tests can assert on call patterns and payloads without network access.
"""
import itertools
import re
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import pytest

from demo_seed.cleanup import CleanupEngine
from demo_seed.exceptions import TransportError
from demo_seed.injector import InjectionEngine
from demo_seed.schema_cache import DescribeCache
from demo_seed.snapshots import InMemorySnapshotStore, SnapshotService
from demo_seed.transport import TransportSelector


# =======================
# PYTEST CONFIGURATION
# =======================

def pytest_configure(config):
    """Configure pytest with custom markers"""
    config.addinivalue_line(
        "markers", "unit: Unit tests that don't touch the fake org"
    )
    config.addinivalue_line(
        "markers", "integration: Multi-engine tests against the in-memory fake org"
    )


def pytest_collection_modifyitems(config, items):
    """Mark everything under tests/unit as unit"""
    for item in items:
        if "unit" in item.path.parts:
            item.add_marker(pytest.mark.unit)


FIXED_NOW = datetime(2024, 1, 15, 12, 0, 0, tzinfo=timezone.utc)

ID_PREFIXES = {
    "Account": "001",
    "Contact": "003",
    "Opportunity": "006",
    "Lead": "00Q",
    "Campaign": "701",
    "Case": "500",
    "CampaignMember": "00v",
    "Task": "00T",
    "Event": "00U",
    "EmailMessage": "02s",
}


def make_describe(fields: Optional[List[Dict[str, Any]]] = None,
                  record_types: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
    """Build a describe payload in the shape Salesforce returns."""
    full_fields = []
    for field in fields or []:
        full = {
            "createable": True,
            "nillable": True,
            "defaultedOnCreate": False,
            "calculated": False,
            "autoNumber": False,
            "type": "string",
            "filterable": True,
            "referenceTo": [],
        }
        full.update(field)
        full_fields.append(full)
    return {"fields": full_fields, "recordTypeInfos": record_types or []}


# =======================
# FAKE ORG
# =======================

class FakeOrg:
    """Records keyed by object type and id, with sequential 18 character ids."""

    def __init__(self):
        self.records: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._counter = itertools.count(1)

    def new_id(self, object_type: str) -> str:
        prefix = ID_PREFIXES.get(object_type, "a00")
        # Unique within the first 15 characters
        return f"{prefix}{next(self._counter):012d}AAA"

    def insert(self, object_type: str, attributes: Dict[str, Any]) -> str:
        record_id = self.new_id(object_type)
        self.records.setdefault(object_type, {})[record_id] = {"Id": record_id, **attributes}
        return record_id

    def update(self, record_id: str, attributes: Dict[str, Any]) -> bool:
        for records in self.records.values():
            if record_id in records:
                records[record_id].update(attributes)
                return True
        return False

    def delete(self, record_id: str) -> bool:
        for records in self.records.values():
            if record_id in records:
                del records[record_id]
                return True
        return False

    def all(self, object_type: str) -> List[Dict[str, Any]]:
        return list(self.records.get(object_type, {}).values())


_BY_ID = re.compile(r"SELECT (?P<fields>.+?) FROM (?P<type>\w+) WHERE Id IN \((?P<ids>.*)\)")
_BY_MARKER = re.compile(r"SELECT (?P<fields>.+?) FROM (?P<type>\w+) WHERE (?P<where>.+?)(?: LIMIT \d+)?$")
_LIKE = re.compile(r"(\w+) LIKE '%(.*?)%'")


class FakeRestApi:
    """
    Recording stand-in for RestApi.

    fail_when(object_type, attributes) returns an error message to reject a
    record; raise_for holds object types whose create calls raise.
    """

    def __init__(self, org: FakeOrg):
        self.org = org
        self.describes: Dict[str, Dict[str, Any]] = {}
        self.describe_errors: Dict[str, str] = {}
        self.describe_calls: List[str] = []
        self.create_calls: List[tuple] = []
        self.update_calls: List[tuple] = []
        self.delete_calls: List[tuple] = []
        self.queries: List[str] = []
        self.fail_when: Optional[Callable[[str, Dict[str, Any]], Optional[str]]] = None
        self.raise_for: set = set()
        self.query_error: Optional[str] = None

    def describe(self, object_type):
        self.describe_calls.append(object_type)
        if object_type in self.describe_errors:
            raise TransportError(self.describe_errors[object_type], object_type=object_type)
        return self.describes.get(object_type, make_describe())

    def create_batch(self, object_type, records):
        assert len(records) <= 200
        self.create_calls.append((object_type, [dict(r) for r in records]))
        if object_type in self.raise_for:
            raise TransportError("HTTP 503: Service Unavailable", object_type=object_type,
                                 batch_size=len(records))
        results = []
        for attributes in records:
            error = self.fail_when(object_type, attributes) if self.fail_when else None
            if error:
                results.append({"success": False, "id": None,
                                "errors": [{"statusCode": "FIELD_CUSTOM_VALIDATION_EXCEPTION",
                                            "message": error}]})
            else:
                results.append({"success": True, "id": self.org.insert(object_type, attributes), "errors": []})
        return results

    def update_batch(self, object_type, records):
        assert len(records) <= 200
        self.update_calls.append((object_type, [dict(r) for r in records]))
        results = []
        for attributes in records:
            fields = {k: v for k, v in attributes.items() if k != "Id"}
            if self.org.update(attributes["Id"], fields):
                results.append({"id": attributes["Id"], "success": True, "errors": []})
            else:
                results.append({"id": attributes["Id"], "success": False,
                                "errors": [{"statusCode": "ENTITY_IS_DELETED", "message": "entity is deleted"}]})
        return results

    def delete_batch(self, object_type, ids):
        assert len(ids) <= 200
        self.delete_calls.append((object_type, list(ids)))
        results = []
        for record_id in ids:
            if self.org.delete(record_id):
                results.append({"id": record_id, "success": True, "errors": []})
            else:
                results.append({"id": record_id, "success": False,
                                "errors": [{"statusCode": "ENTITY_IS_DELETED", "message": "entity is deleted"}]})
        return results

    def query(self, soql):
        self.queries.append(soql)
        if self.query_error:
            raise TransportError(self.query_error)

        match = _BY_ID.match(soql)
        if match:
            ids = set(re.findall(r"'([^']*)'", match.group("ids")))
            rows = [r for r in self.org.all(match.group("type")) if r["Id"] in ids]
            return [self._project(match.group("type"), r, match.group("fields")) for r in rows]

        match = _BY_MARKER.match(soql)
        if match:
            clauses = _LIKE.findall(match.group("where"))
            rows = [
                r for r in self.org.all(match.group("type"))
                if any(marker in str(r.get(field) or "") for field, marker in clauses)
            ]
            return [self._project(match.group("type"), r, match.group("fields")) for r in rows]
        raise AssertionError(f"Unexpected query: {soql}")

    @staticmethod
    def _project(object_type, row, fields):
        projected = {"attributes": {"type": object_type}}
        for name in [f.strip() for f in fields.split(",")]:
            projected[name] = row.get(name)
        return projected


class FakeBulkApi:
    """Recording stand-in for BulkApi; creates into the same fake org."""

    def __init__(self, org: FakeOrg):
        self.org = org
        self.insert_calls: List[tuple] = []
        self.delete_calls: List[tuple] = []
        self.error: Optional[TransportError] = None

    def insert(self, object_type, records):
        self.insert_calls.append((object_type, [dict(r) for r in records]))
        if self.error:
            raise self.error
        return [{"success": True, "id": self.org.insert(object_type, r), "errors": []} for r in records]

    def delete(self, object_type, ids):
        self.delete_calls.append((object_type, list(ids)))
        if self.error:
            raise self.error
        return [{"success": self.org.delete(i), "id": i, "errors": []} for i in ids]


# =======================
# FIXTURES
# =======================

@pytest.fixture
def org() -> FakeOrg:
    return FakeOrg()


@pytest.fixture
def rest_api(org) -> FakeRestApi:
    return FakeRestApi(org)


@pytest.fixture
def bulk_api(org) -> FakeBulkApi:
    return FakeBulkApi(org)


@pytest.fixture
def selector(rest_api, bulk_api) -> TransportSelector:
    return TransportSelector(rest_api, bulk_api, threshold=200)


@pytest.fixture
def schema_cache() -> DescribeCache:
    return DescribeCache()


@pytest.fixture
def engine(rest_api, selector, schema_cache) -> InjectionEngine:
    return InjectionEngine(rest_api, selector, schema_cache, environment_id="test-env",
                           now=lambda: FIXED_NOW)


@pytest.fixture
def cleanup_engine(rest_api, selector) -> CleanupEngine:
    return CleanupEngine(rest_api, selector)


@pytest.fixture
def snapshot_service(rest_api, engine, cleanup_engine, schema_cache) -> SnapshotService:
    return SnapshotService(rest_api, engine, cleanup_engine, InMemorySnapshotStore(),
                           environment_id="test-env", schema_cache=schema_cache,
                           now=lambda: FIXED_NOW)


@pytest.fixture(name="make_describe")
def make_describe_fixture():
    """Describe payload builder, see make_describe()"""
    return make_describe
