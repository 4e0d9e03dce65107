"""
Row-oriented REST client: describe, SOQL query and sObject collection
create/update/delete (at most 200 records per call, results in input order).
"""

import json
import logging
from typing import Any, Dict, List

import requests
from simple_salesforce import Salesforce
from simple_salesforce.exceptions import SalesforceError

from .exceptions import TransportError

logger = logging.getLogger(__name__)

# Salesforce REST API supports max 200 records per collection request
MAX_BATCH_SIZE = 200


def error_message(errors: Any) -> str:
    """Flatten a REST/Bulk errors list into one string."""
    if not errors:
        return "Unknown error"
    messages = []
    for error in errors:
        if isinstance(error, dict):
            message = error.get('message') or 'Unknown error'
            status_code = error.get('statusCode')
            messages.append(f"{status_code}: {message}" if status_code else message)
        else:
            messages.append(str(error))
    return ', '.join(messages)


class RestApi:
    def __init__(self, sf: Salesforce):
        self.sf = sf

    def describe(self, object_type: str) -> Dict[str, Any]:
        try:
            return getattr(self.sf, object_type).describe()
        except (SalesforceError, requests.RequestException) as e:
            raise TransportError(f"Failed to describe {object_type}: {e}", object_type=object_type) from e

    def query(self, soql: str) -> List[Dict[str, Any]]:
        try:
            return self.sf.query_all(soql).get('records', [])
        except (SalesforceError, requests.RequestException) as e:
            raise TransportError(f"Query failed: {e}") from e

    def create_batch(self, object_type: str, records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Create up to 200 records with allOrNone=false."""
        if not records:
            return []
        if len(records) > MAX_BATCH_SIZE:
            raise ValueError(f"create_batch accepts at most {MAX_BATCH_SIZE} records, got {len(records)}")

        payload = {
            "allOrNone": False,
            "records": [{"attributes": {"type": object_type}, **record} for record in records],
        }
        try:
            results = self.sf.restful('composite/sobjects', method='POST', data=json.dumps(payload))
        except (SalesforceError, requests.RequestException) as e:
            raise TransportError(
                f"Failed to create {object_type} records: {e}", object_type=object_type, batch_size=len(records)
            ) from e
        return self._check_length(results, len(records), object_type)

    def update_batch(self, object_type: str, records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Update up to 200 records, each carrying its Id, with allOrNone=false."""
        if not records:
            return []
        if len(records) > MAX_BATCH_SIZE:
            raise ValueError(f"update_batch accepts at most {MAX_BATCH_SIZE} records, got {len(records)}")

        payload = {
            "allOrNone": False,
            "records": [{"attributes": {"type": object_type}, **record} for record in records],
        }
        try:
            results = self.sf.restful('composite/sobjects', method='PATCH', data=json.dumps(payload))
        except (SalesforceError, requests.RequestException) as e:
            raise TransportError(
                f"Failed to update {object_type} records: {e}", object_type=object_type, batch_size=len(records)
            ) from e
        return self._check_length(results, len(records), object_type)

    def delete_batch(self, object_type: str, ids: List[str]) -> List[Dict[str, Any]]:
        """Delete up to 200 records by id with allOrNone=false."""
        if not ids:
            return []
        if len(ids) > MAX_BATCH_SIZE:
            raise ValueError(f"delete_batch accepts at most {MAX_BATCH_SIZE} ids, got {len(ids)}")
        try:
            results = self.sf.restful(
                'composite/sobjects',
                method='DELETE',
                params={'ids': ','.join(ids), 'allOrNone': 'false'},
            )
        except (SalesforceError, requests.RequestException) as e:
            raise TransportError(
                f"Failed to delete {object_type} records: {e}", object_type=object_type, batch_size=len(ids)
            ) from e
        return self._check_length(results, len(ids), object_type)

    @staticmethod
    def _check_length(results: Any, expected: int, object_type: str) -> List[Dict[str, Any]]:
        if not isinstance(results, list) or len(results) != expected:
            got = len(results) if isinstance(results, list) else type(results).__name__
            raise TransportError(
                f"Unexpected collection response for {object_type}: expected {expected} results, got {got}",
                object_type=object_type,
                batch_size=expected,
            )
        return results
