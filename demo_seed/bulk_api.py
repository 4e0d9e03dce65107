"""
Bulk API 2.0 ingest client.

One call runs a whole job: create job -> upload CSV -> close (UploadComplete)
-> poll until a terminal state -> fetch successful/failed result sets. Result
rows are mapped back to the input order before being returned.
"""

import io
import json
import logging
import time
from collections import defaultdict, deque
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

import pandas as pd
import requests
from simple_salesforce import Salesforce

from .exceptions import BulkJobError, TransportError

logger = logging.getLogger(__name__)

TERMINAL_FAILURE_STATES = ("Failed", "Aborted")


def csv_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, dict):
        return json.dumps(value)
    return str(value)


def records_to_csv(records: List[Dict[str, Any]]) -> Tuple[str, List[str], List[Dict[str, str]]]:
    """Serialise records to CSV. Returns the payload, its columns and the string rows."""
    columns: List[str] = []
    for record in records:
        for key in record:
            if key not in columns:
                columns.append(key)
    rows = [{column: csv_value(record.get(column)) for column in columns} for record in records]
    frame = pd.DataFrame(rows, columns=columns)
    return frame.to_csv(index=False, lineterminator="\n"), columns, rows


def csv_to_records(text: str) -> List[Dict[str, str]]:
    if not text or not text.strip():
        return []
    frame = pd.read_csv(io.StringIO(text), dtype=str, keep_default_na=False)
    return frame.to_dict(orient="records")


def match_results(columns: List[str], rows: List[Dict[str, str]],
                  succeeded: List[Dict[str, str]], failed: List[Dict[str, str]]) -> List[Dict[str, Any]]:
    """
    Map result rows back to input positions.

    Bulk result sets echo the submitted columns but are not ordered, so rows
    are matched on the echoed values. A row whose echoed values no longer
    match (server-side formatting) is only placed when it is the single
    leftover row for the single free position. Otherwise the free inputs are
    reported as failed; an unplaced success row never lends its id to another
    input.
    """
    positions: Dict[Tuple[str, ...], Deque[int]] = defaultdict(deque)
    for index, row in enumerate(rows):
        positions[tuple(row.get(c, "") for c in columns)].append(index)

    outcomes: List[Optional[Dict[str, Any]]] = [None] * len(rows)
    unmatched: List[Dict[str, Any]] = []

    tagged = [(r, True) for r in succeeded] + [(r, False) for r in failed]
    for result_row, success in tagged:
        if success:
            outcome = {"success": True, "id": result_row.get("sf__Id") or None, "errors": []}
        else:
            outcome = {"success": False, "id": result_row.get("sf__Id") or None,
                       "errors": [{"message": result_row.get("sf__Error") or "Unknown error"}]}
        key = tuple(result_row.get(c, "") for c in columns)
        if positions.get(key):
            outcomes[positions[key].popleft()] = outcome
        else:
            unmatched.append(outcome)

    free = [i for i, outcome in enumerate(outcomes) if outcome is None]
    if len(free) == 1 and len(unmatched) == 1:
        outcomes[free[0]] = unmatched[0]
        return outcomes

    if unmatched:
        orphaned = [o["id"] for o in unmatched if o["success"] and o["id"]]
        logger.warning(
            f"{len(unmatched)} bulk result rows could not be matched to input"
            + (f"; created ids not linked to any record: {orphaned}" if orphaned else "")
        )
        message = "Bulk result could not be matched to input"
    else:
        message = "No result returned for record by bulk job"
    for index in free:
        outcomes[index] = {"success": False, "id": None, "errors": [{"message": message}]}
    return outcomes


class BulkApi:
    def __init__(self, sf: Salesforce, session: Optional[requests.Session] = None,
                 poll_interval: float = 2, poll_timeout: float = 300,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic):
        self.sf = sf
        self.session = session or requests.Session()
        self.poll_interval = poll_interval
        self.poll_timeout = poll_timeout
        self._sleep = sleep
        self._clock = clock

    @property
    def ingest_url(self) -> str:
        # base_url looks like https://xxx.my.salesforce.com/services/data/v59.0/
        return f"{self.sf.base_url.rstrip('/')}/jobs/ingest"

    def _headers(self, content_type: Optional[str] = "application/json", accept: Optional[str] = None) -> Dict[str, str]:
        headers = {"Authorization": f"Bearer {self.sf.session_id}"}
        if content_type:
            headers["Content-Type"] = content_type
        if accept:
            headers["Accept"] = accept
        return headers

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        try:
            response = self.session.request(method, url, **kwargs)
        except requests.RequestException as e:
            raise TransportError(f"Bulk API request failed: {e}") from e
        if response.status_code >= 400:
            raise TransportError(f"Bulk API {method} {url} returned {response.status_code}: {response.text[:300]}")
        return response

    # --- job lifecycle -----------------------------------------------------

    def create_job(self, object_type: str, operation: str) -> str:
        payload = {"object": object_type, "operation": operation, "contentType": "CSV", "lineEnding": "LF"}
        response = self._request("POST", self.ingest_url, json=payload, headers=self._headers())
        job_id = response.json()["id"]
        logger.info(f"Created bulk {operation} job {job_id} for {object_type}")
        return job_id

    def upload(self, job_id: str, payload: str) -> None:
        self._request("PUT", f"{self.ingest_url}/{job_id}/batches", data=payload.encode("utf-8"),
                      headers=self._headers("text/csv"))

    def close(self, job_id: str) -> None:
        self._request("PATCH", f"{self.ingest_url}/{job_id}", json={"state": "UploadComplete"},
                      headers=self._headers())

    def abort(self, job_id: str) -> None:
        self._request("PATCH", f"{self.ingest_url}/{job_id}", json={"state": "Aborted"},
                      headers=self._headers())

    def get_job(self, job_id: str) -> Dict[str, Any]:
        return self._request("GET", f"{self.ingest_url}/{job_id}", headers=self._headers(None)).json()

    def poll_until_done(self, job_id: str, timeout: Optional[float] = None) -> Dict[str, Any]:
        timeout = self.poll_timeout if timeout is None else timeout
        deadline = self._clock() + timeout
        while True:
            status = self.get_job(job_id)
            state = status.get("state")
            if state == "JobComplete":
                return status
            if state in TERMINAL_FAILURE_STATES:
                message = status.get("errorMessage") or f"Bulk job {state}"
                raise BulkJobError(message, job_id=job_id, state=state)
            if self._clock() >= deadline:
                raise BulkJobError(f"Bulk job {job_id} timed out after {timeout}s", job_id=job_id, state=state)
            self._sleep(self.poll_interval)

    def fetch_results(self, job_id: str) -> Tuple[List[Dict[str, str]], List[Dict[str, str]]]:
        headers = self._headers(None, accept="text/csv")
        succeeded = self._request("GET", f"{self.ingest_url}/{job_id}/successfulResults", headers=headers)
        failed = self._request("GET", f"{self.ingest_url}/{job_id}/failedResults", headers=headers)
        return csv_to_records(succeeded.text), csv_to_records(failed.text)

    # --- whole jobs --------------------------------------------------------

    def run_job(self, object_type: str, operation: str, records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Run one ingest job and return per-record results in input order."""
        if not records:
            return []

        payload, columns, rows = records_to_csv(records)
        job_id = self.create_job(object_type, operation)
        try:
            self.upload(job_id, payload)
            self.close(job_id)
            status = self.poll_until_done(job_id)
            succeeded, failed = self.fetch_results(job_id)
        except TransportError as e:
            if isinstance(e, BulkJobError) and e.state in TERMINAL_FAILURE_STATES:
                raise
            try:
                self.abort(job_id)
            except TransportError as abort_error:
                logger.warning(f"Could not abort bulk job {job_id}: {abort_error}")
            raise

        logger.info(
            f"Bulk {operation} job {job_id} for {object_type} complete: "
            f"{status.get('numberRecordsProcessed', len(succeeded) + len(failed))} processed, "
            f"{status.get('numberRecordsFailed', len(failed))} failed"
        )
        return match_results(columns, rows, succeeded, failed)

    def insert(self, object_type: str, records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return self.run_job(object_type, "insert", records)

    def delete(self, object_type: str, ids: List[str]) -> List[Dict[str, Any]]:
        results = self.run_job(object_type, "delete", [{"Id": record_id} for record_id in ids])
        for record_id, result in zip(ids, results):
            result["id"] = result.get("id") or record_id
        return results
