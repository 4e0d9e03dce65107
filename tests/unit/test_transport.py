"""
Unit tests for row vs bulk transport selection.
"""

import pytest

from demo_seed.exceptions import BulkJobError
from demo_seed.models import PreparedRecord
from demo_seed.transport import TransportSelector


def _prepared(count, prefix="a"):
    return [PreparedRecord(local_id=f"{prefix}{i}", attributes={"Name": f"Account {i}"}) for i in range(count)]


class TestChooseAndSubmit:
    """Tests for TransportSelector.choose_and_submit"""

    def test_199_records_use_one_row_call(self, selector, rest_api, bulk_api):
        outcomes = selector.choose_and_submit("Account", _prepared(199))
        assert len(rest_api.create_calls) == 1
        assert len(rest_api.create_calls[0][1]) == 199
        assert bulk_api.insert_calls == []
        assert all(o.success for o in outcomes)

    def test_200_records_stay_on_row_path(self, selector, rest_api, bulk_api):
        selector.choose_and_submit("Account", _prepared(200))
        assert len(rest_api.create_calls) == 1
        assert bulk_api.insert_calls == []

    def test_201_records_use_one_bulk_job(self, selector, rest_api, bulk_api):
        outcomes = selector.choose_and_submit("Account", _prepared(201))
        assert rest_api.create_calls == []
        assert len(bulk_api.insert_calls) == 1
        assert len(bulk_api.insert_calls[0][1]) == 201
        assert len(outcomes) == 201

    def test_bulk_disabled_chunks_by_200(self, rest_api, bulk_api):
        selector = TransportSelector(rest_api, bulk_api, threshold=200, use_bulk_api=False)
        outcomes = selector.choose_and_submit("Account", _prepared(450))
        assert [len(call[1]) for call in rest_api.create_calls] == [200, 200, 50]
        assert bulk_api.insert_calls == []
        assert [o.local_id for o in outcomes] == [f"a{i}" for i in range(450)]

    def test_outcomes_in_input_order_with_parallel_chunks(self, rest_api, bulk_api):
        selector = TransportSelector(rest_api, bulk_api, use_bulk_api=False, row_workers=3)
        prepared = _prepared(650)
        outcomes = selector.choose_and_submit("Account", prepared)
        assert [o.local_id for o in outcomes] == [p.local_id for p in prepared]

    def test_record_rejection_maps_to_failure(self, selector, rest_api):
        rest_api.fail_when = lambda object_type, attrs: "bad name" if attrs["Name"] == "Account 1" else None
        outcomes = selector.choose_and_submit("Account", _prepared(3))
        assert [o.success for o in outcomes] == [True, False, True]
        assert outcomes[1].error == "FIELD_CUSTOM_VALIDATION_EXCEPTION: bad name"
        assert outcomes[1].remote_id is None

    def test_transport_error_fails_only_its_chunk(self, rest_api, bulk_api):
        calls = {"n": 0}
        original = rest_api.create_batch

        def flaky(object_type, records):
            calls["n"] += 1
            if calls["n"] == 2:
                rest_api.raise_for.add(object_type)
            try:
                return original(object_type, records)
            finally:
                rest_api.raise_for.discard(object_type)

        rest_api.create_batch = flaky
        selector = TransportSelector(rest_api, bulk_api, use_bulk_api=False)
        outcomes = selector.choose_and_submit("Account", _prepared(450))
        assert all(o.success for o in outcomes[:200])
        assert not any(o.success for o in outcomes[200:400])
        assert all("503" in o.error for o in outcomes[200:400])
        assert all(o.success for o in outcomes[400:])

    def test_bulk_error_fails_every_record(self, selector, bulk_api):
        bulk_api.error = BulkJobError("Bulk job 750x timed out after 300s", job_id="750x", state="InProgress")
        outcomes = selector.choose_and_submit("Account", _prepared(250))
        assert len(outcomes) == 250
        assert not any(o.success for o in outcomes)
        assert "timed out" in outcomes[0].error

    def test_empty_submission(self, selector, rest_api):
        assert selector.choose_and_submit("Account", []) == []
        assert rest_api.create_calls == []


class TestChooseAndDelete:
    """Tests for TransportSelector.choose_and_delete"""

    def test_already_deleted_counts_as_success(self, selector, rest_api, org):
        existing = org.insert("Account", {"Name": "Acme"})
        outcomes = selector.choose_and_delete("Account", [existing, "001000000000009999"])
        assert [o.success for o in outcomes] == [True, True]

    def test_other_errors_fail(self, selector, rest_api):
        def delete_batch(object_type, ids):
            return [{"id": i, "success": False,
                     "errors": [{"statusCode": "DELETE_FAILED", "message": "in use"}]} for i in ids]

        rest_api.delete_batch = delete_batch
        outcomes = selector.choose_and_delete("Account", ["001A"])
        assert not outcomes[0].success
        assert outcomes[0].error == "DELETE_FAILED: in use"

    def test_large_delete_uses_bulk(self, selector, rest_api, bulk_api):
        ids = [f"001{i:015d}" for i in range(201)]
        selector.choose_and_delete("Account", ids)
        assert rest_api.delete_calls == []
        assert len(bulk_api.delete_calls) == 1

    @pytest.mark.parametrize("count,calls", [(1, 1), (200, 1), (201, 0)])
    def test_threshold_for_deletes(self, selector, rest_api, count, calls):
        selector.choose_and_delete("Account", [f"001{i:015d}" for i in range(count)])
        assert len(rest_api.delete_calls) == calls
