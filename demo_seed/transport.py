"""
Transport selection: row path (sObject collections, 200 per call) for small
submissions, Bulk API 2.0 for anything above the threshold.

Both paths return one outcome per input, in input order. A TransportError
fails every record of the affected submission (one row chunk, or the whole
bulk job) and is captured here rather than raised.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional

from .bulk_api import BulkApi
from .exceptions import TransportError
from .models import DeleteOutcome, PreparedRecord, SubmissionOutcome
from .rest_api import MAX_BATCH_SIZE, RestApi, error_message

logger = logging.getLogger(__name__)

DEFAULT_BULK_THRESHOLD = 200

# Delete errors meaning the record is already gone
ALREADY_DELETED_CODES = ("ENTITY_IS_DELETED", "INVALID_CROSS_REFERENCE_KEY")


def _chunks(items: List[Any], size: int) -> List[List[Any]]:
    return [items[i:i + size] for i in range(0, len(items), size)]


def _already_deleted(errors: Any) -> bool:
    for error in errors or []:
        if isinstance(error, dict) and error.get('statusCode') in ALREADY_DELETED_CODES:
            return True
        if any(code in str(error) for code in ALREADY_DELETED_CODES):
            return True
    return False


class TransportSelector:
    def __init__(self, rest_api: RestApi, bulk_api: Optional[BulkApi] = None,
                 threshold: int = DEFAULT_BULK_THRESHOLD, use_bulk_api: bool = True,
                 row_workers: int = 1):
        self.rest_api = rest_api
        self.bulk_api = bulk_api
        self.threshold = threshold
        self.use_bulk_api = use_bulk_api
        self.row_workers = max(1, row_workers)

    def uses_bulk(self, count: int) -> bool:
        return self.use_bulk_api and self.bulk_api is not None and count > self.threshold

    def _map_chunks(self, func, chunks: List[List[Any]]) -> List[Any]:
        if self.row_workers == 1 or len(chunks) == 1:
            return [func(chunk) for chunk in chunks]
        # executor.map keeps chunk order
        with ThreadPoolExecutor(max_workers=self.row_workers) as executor:
            return list(executor.map(func, chunks))

    # --- create ------------------------------------------------------------

    def choose_and_submit(self, object_type: str, prepared: List[PreparedRecord]) -> List[SubmissionOutcome]:
        if not prepared:
            return []

        if self.uses_bulk(len(prepared)):
            logger.info(f"Submitting {len(prepared)} {object_type} records via Bulk API 2.0")
            try:
                results = self.bulk_api.insert(object_type, [p.attributes for p in prepared])
            except TransportError as e:
                logger.error(f"Bulk insert of {object_type} failed: {e}")
                return [SubmissionOutcome(local_id=p.local_id, success=False, error=str(e)) for p in prepared]
            return [self._to_submission(p, r) for p, r in zip(prepared, results)]

        logger.info(f"Submitting {len(prepared)} {object_type} records via REST API")

        def submit_chunk(chunk: List[PreparedRecord]) -> List[SubmissionOutcome]:
            try:
                results = self.rest_api.create_batch(object_type, [p.attributes for p in chunk])
            except TransportError as e:
                logger.error(f"Batch of {len(chunk)} {object_type} records failed: {e}")
                return [SubmissionOutcome(local_id=p.local_id, success=False, error=str(e)) for p in chunk]
            return [self._to_submission(p, r) for p, r in zip(chunk, results)]

        outcomes: List[SubmissionOutcome] = []
        for chunk_outcomes in self._map_chunks(submit_chunk, _chunks(prepared, MAX_BATCH_SIZE)):
            outcomes.extend(chunk_outcomes)
        return outcomes

    @staticmethod
    def _to_submission(prepared: PreparedRecord, result: Dict[str, Any]) -> SubmissionOutcome:
        if result.get('success') and result.get('id'):
            return SubmissionOutcome(local_id=prepared.local_id, success=True, remote_id=result['id'])
        return SubmissionOutcome(local_id=prepared.local_id, success=False,
                                 error=error_message(result.get('errors')))

    # --- delete ------------------------------------------------------------

    def choose_and_delete(self, object_type: str, ids: List[str]) -> List[DeleteOutcome]:
        if not ids:
            return []

        if self.uses_bulk(len(ids)):
            logger.info(f"Deleting {len(ids)} {object_type} records via Bulk API 2.0")
            try:
                results = self.bulk_api.delete(object_type, ids)
            except TransportError as e:
                logger.error(f"Bulk delete of {object_type} failed: {e}")
                return [DeleteOutcome(remote_id=record_id, success=False, error=str(e)) for record_id in ids]
            return [self._to_delete(record_id, r) for record_id, r in zip(ids, results)]

        def delete_chunk(chunk: List[str]) -> List[DeleteOutcome]:
            try:
                results = self.rest_api.delete_batch(object_type, chunk)
            except TransportError as e:
                logger.error(f"Delete batch of {len(chunk)} {object_type} records failed: {e}")
                return [DeleteOutcome(remote_id=record_id, success=False, error=str(e)) for record_id in chunk]
            return [self._to_delete(record_id, r) for record_id, r in zip(chunk, results)]

        outcomes: List[DeleteOutcome] = []
        for chunk_outcomes in self._map_chunks(delete_chunk, _chunks(ids, MAX_BATCH_SIZE)):
            outcomes.extend(chunk_outcomes)
        return outcomes

    @staticmethod
    def _to_delete(record_id: str, result: Dict[str, Any]) -> DeleteOutcome:
        if result.get('success'):
            return DeleteOutcome(remote_id=record_id, success=True)
        errors = result.get('errors')
        if _already_deleted(errors):
            # Already gone - count as deleted
            return DeleteOutcome(remote_id=record_id, success=True)
        return DeleteOutcome(remote_id=record_id, success=False, error=error_message(errors))
