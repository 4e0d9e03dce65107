"""
Reverse-order deletion of injected records, and existence checks.
"""

import logging
import re
from collections import OrderedDict
from typing import Callable, Dict, Iterable, List, Mapping, Optional

from .dependency_graph import DependencyGraph, default_graph
from .exceptions import TransportError
from .models import CleanupResult, InjectionResult
from .rest_api import MAX_BATCH_SIZE, RestApi
from .transport import TransportSelector

logger = logging.getLogger(__name__)

SALESFORCE_ID_PATTERN = re.compile(r'^[a-zA-Z0-9]{15}([a-zA-Z0-9]{3})?$')


def ids_by_type(result: InjectionResult) -> "OrderedDict[str, List[str]]":
    """Group the Salesforce ids created by an injection run by object type."""
    grouped: "OrderedDict[str, List[str]]" = OrderedDict()
    for entry in result.success:
        grouped.setdefault(entry.object_type or "", []).append(entry.remote_id)
    grouped.pop("", None)
    return grouped


class CleanupEngine:
    def __init__(self, rest_api: RestApi, selector: TransportSelector,
                 graph: DependencyGraph = default_graph):
        self.rest_api = rest_api
        self.selector = selector
        self.graph = graph

    def cleanup(self, ids_by_object: Mapping[str, Iterable[str]],
                progress: Optional[Callable[[int, int], None]] = None) -> CleanupResult:
        """Delete children before parents. One failed id never blocks the others."""
        pending: Dict[str, List[str]] = {}
        for object_type, ids in ids_by_object.items():
            unique = list(dict.fromkeys(record_id for record_id in ids if record_id))
            if unique:
                pending[object_type] = unique

        total = sum(len(ids) for ids in pending.values())
        result = CleanupResult()
        processed = 0

        for object_type in self.graph.reverse_order_for(pending.keys()):
            ids = pending[object_type]
            logger.info(f"Deleting {len(ids)} {object_type} records")
            for outcome in self.selector.choose_and_delete(object_type, ids):
                result.record(object_type, outcome)
            processed += len(ids)
            if progress is not None:
                progress(processed, total)

        logger.info(f"Cleanup finished: {result.success} deleted, {result.failed} failed")
        return result

    def verify_records(self, object_type: str, ids: Iterable[str]) -> Dict[str, bool]:
        """Check which ids still exist. A failed query marks its ids as not found."""
        ids = list(dict.fromkeys(ids))
        exists = {record_id: False for record_id in ids}
        valid_ids = [record_id for record_id in ids if SALESFORCE_ID_PATTERN.match(record_id)]

        for i in range(0, len(valid_ids), MAX_BATCH_SIZE):
            batch = valid_ids[i:i + MAX_BATCH_SIZE]
            id_list = ", ".join(f"'{record_id}'" for record_id in batch)
            try:
                rows = self.rest_api.query(f"SELECT Id FROM {object_type} WHERE Id IN ({id_list})")
            except TransportError as e:
                logger.warning(f"Could not verify {len(batch)} {object_type} records: {e}")
                continue
            # Query returns 18 character ids; callers may hold 15 character ones
            found = {row['Id'][:15] for row in rows if row.get('Id')}
            for record_id in batch:
                exists[record_id] = record_id[:15] in found
        return exists
