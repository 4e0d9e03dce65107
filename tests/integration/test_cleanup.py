"""
Cleanup engine tests against the in-memory fake org.
"""

import pytest

from demo_seed.cleanup import ids_by_type
from demo_seed.models import LogicalRecord

pytestmark = pytest.mark.integration


def _inject_family(engine):
    return engine.inject([
        LogicalRecord(object_type="Account", local_id="C1", attributes={"Name": "Acme"}),
        LogicalRecord(object_type="Contact", local_id="P1", parent_local_id="C1", attributes={"LastName": "Ng"}),
        LogicalRecord(object_type="Opportunity", local_id="O1", parent_local_id="C1",
                      attributes={"Name": "Deal", "StageName": "Prospecting", "CloseDate": "2024-03-01"}),
        LogicalRecord(object_type="Task", local_id="T1", parent_local_id="P1",
                      attributes={"Subject": "Call", "WhatId_localId": "O1"}),
    ])


class TestCleanup:
    """Tests for CleanupEngine.cleanup"""

    def test_children_deleted_before_parents(self, engine, cleanup_engine, rest_api, org):
        result = _inject_family(engine)
        cleanup = cleanup_engine.cleanup(ids_by_type(result))

        assert [call[0] for call in rest_api.delete_calls] == ["Task", "Opportunity", "Contact", "Account"]
        assert cleanup.success == 4
        assert cleanup.failed == 0
        assert all(not org.all(t) for t in ("Account", "Contact", "Opportunity", "Task"))

    def test_one_failed_id_does_not_block_others(self, cleanup_engine, rest_api, org):
        keep = org.insert("Account", {"Name": "Locked"})
        gone = org.insert("Account", {"Name": "Gone"})
        original = rest_api.delete_batch

        def delete_batch(object_type, ids):
            results = original(object_type, [i for i in ids if i != keep])
            by_id = {r["id"]: r for r in results}
            return [by_id.get(i, {"id": i, "success": False,
                                  "errors": [{"statusCode": "DELETE_FAILED", "message": "record locked"}]})
                    for i in ids]

        rest_api.delete_batch = delete_batch
        cleanup = cleanup_engine.cleanup({"Account": [keep, gone]})

        assert cleanup.success_ids == [gone]
        assert cleanup.failed_ids == [keep]
        assert cleanup.error_samples == {"Account": ["DELETE_FAILED: record locked"]}

    def test_already_deleted_counts_as_success(self, cleanup_engine):
        cleanup = cleanup_engine.cleanup({"Contact": ["003000000000000999"]})
        assert cleanup.success == 1

    def test_duplicate_and_empty_ids_ignored(self, cleanup_engine, rest_api, org):
        record_id = org.insert("Account", {"Name": "Acme"})
        cleanup_engine.cleanup({"Account": [record_id, record_id, ""], "Contact": []})
        assert rest_api.delete_calls == [("Account", [record_id])]

    def test_progress(self, cleanup_engine, org):
        a = org.insert("Account", {"Name": "Acme"})
        c = org.insert("Contact", {"LastName": "Ng"})
        seen = []
        cleanup_engine.cleanup({"Account": [a], "Contact": [c]},
                               progress=lambda done, total: seen.append((done, total)))
        assert seen == [(1, 2), (2, 2)]


class TestVerifyRecords:
    """Tests for CleanupEngine.verify_records"""

    def test_existing_and_missing(self, cleanup_engine, org):
        present = org.insert("Account", {"Name": "Acme"})
        result = cleanup_engine.verify_records("Account", [present, "001000000000000999", "not-an-id"])
        assert result == {present: True, "001000000000000999": False, "not-an-id": False}

    def test_fifteen_character_ids_match(self, cleanup_engine, org, rest_api):
        present = org.insert("Account", {"Name": "Acme"})
        original = rest_api.query

        def query(soql):
            # Salesforce matches 15 character ids and always returns 18 characters
            return original(soql.replace(f"'{present[:15]}'", f"'{present}'"))

        rest_api.query = query
        assert cleanup_engine.verify_records("Account", [present[:15]]) == {present[:15]: True}

    def test_query_failure_marks_not_found(self, cleanup_engine, org, rest_api):
        present = org.insert("Account", {"Name": "Acme"})
        rest_api.query_error = "HTTP 500"
        assert cleanup_engine.verify_records("Account", [present]) == {present: False}
