"""
Injection orchestration.

Records are grouped by object type and processed one type at a time in
dependency order: describe -> validate -> transform -> submit -> record ids.
Identifiers recorded for earlier types are never touched by failures of a
later type.
"""

import logging
import warnings
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional

from .dependency_graph import DependencyGraph, default_graph
from .exceptions import (
    DegradedMetadataWarning,
    DuplicateLocalIdError,
    InjectionCancelled,
    InvariantViolation,
    TransportError,
)
from .id_table import IdentifierTable
from .mapper import TemporalDefaultPolicy, normalize_exclusive_relationships, transform
from .models import (
    InjectionConfig,
    InjectionResult,
    LogicalRecord,
    ObjectSchema,
    PreparedRecord,
    ValidationReport,
)
from .rest_api import RestApi
from .schema_cache import DescribeCache
from .transport import TransportSelector
from .validator import validate

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


def group_by_type(records: Iterable[LogicalRecord]) -> "OrderedDict[str, List[LogicalRecord]]":
    """Group records by object type, rejecting duplicate local ids."""
    grouped: "OrderedDict[str, List[LogicalRecord]]" = OrderedDict()
    seen = set()
    for record in records:
        if record.local_id in seen:
            raise DuplicateLocalIdError(f"Local id {record.local_id} appears on more than one input record")
        seen.add(record.local_id)
        grouped.setdefault(record.object_type, []).append(record)
    return grouped


class InjectionEngine:
    def __init__(self, rest_api: RestApi, selector: TransportSelector,
                 schema_cache: Optional[DescribeCache] = None, environment_id: str = "default",
                 graph: DependencyGraph = default_graph,
                 now: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        self.rest_api = rest_api
        self.selector = selector
        self.schema_cache = schema_cache
        self.environment_id = environment_id
        self.graph = graph
        self._now = now

    def describe(self, object_type: str) -> Optional[ObjectSchema]:
        """Describe metadata, or None (degraded mode) when it cannot be fetched."""
        if self.schema_cache is None:
            return None
        try:
            return self.schema_cache.get(self.environment_id, object_type, self.rest_api.describe)
        except TransportError as e:
            message = f"Describe failed for {object_type}; continuing with built-in validation only: {e}"
            logger.warning(message)
            warnings.warn(message, DegradedMetadataWarning, stacklevel=2)
            return None

    def inject(self, records: Iterable[LogicalRecord], config: Optional[InjectionConfig] = None,
               progress: Optional[ProgressCallback] = None,
               should_cancel: Optional[Callable[[], bool]] = None) -> InjectionResult:
        """
        Inject records and return per-record results.

        progress(processed, total) is called after each object type; it may
        raise InjectionCancelled, as may should_cancel() returning True before
        a type starts. Records of types not yet started are then reported as
        not processed.
        """
        config = config or InjectionConfig()
        grouped = group_by_type(records)
        total = sum(len(group) for group in grouped.values())
        order = self.graph.order_for(grouped.keys())

        ids = IdentifierTable()
        result = InjectionResult()
        result.summary.total = total
        temporal_policy = TemporalDefaultPolicy(reference_time=self._now())

        logger.info(f"Injecting {total} records across {len(order)} object types: {', '.join(order)}")

        processed = 0
        for position, object_type in enumerate(order):
            try:
                if should_cancel is not None and should_cancel():
                    raise InjectionCancelled(f"Cancelled before {object_type}")
            except InjectionCancelled as e:
                self._cancel(result, grouped, order[position:], str(e))
                break

            self._inject_type(object_type, grouped[object_type], ids, config, temporal_policy, result)
            processed += len(grouped[object_type])

            if progress is not None:
                try:
                    progress(processed, total)
                except InjectionCancelled as e:
                    self._cancel(result, grouped, order[position + 1:], str(e))
                    break

        logger.info(
            f"Injection finished: {result.summary.successful} succeeded, {result.summary.failed} failed, "
            f"{result.summary.not_processed} not processed"
        )
        return result

    def _cancel(self, result: InjectionResult, grouped: Dict[str, List[LogicalRecord]],
                remaining_types: List[str], reason: str) -> None:
        logger.warning(f"Injection cancelled: {reason}")
        result.cancelled = True
        for object_type in remaining_types:
            result.mark_not_processed([record.local_id for record in grouped[object_type]])

    def _inject_type(self, object_type: str, records: List[LogicalRecord], ids: IdentifierTable,
                     config: InjectionConfig, temporal_policy: TemporalDefaultPolicy,
                     result: InjectionResult) -> None:
        logger.info(f"Processing {len(records)} {object_type} records")
        schema = self.describe(object_type)

        records, rejected = normalize_exclusive_relationships(records, schema, config)
        report = validate(records, ids.view(), schema.required_fields if schema else None, config)

        for rejection in rejected + report.failed:
            result.record_failure(object_type, rejection.record.local_id, rejection.error)
        if report.failed:
            logger.warning(f"{len(report.failed)} {object_type} records failed validation")

        if not report.valid:
            return

        id_view = ids.view()
        prepared = [
            PreparedRecord(local_id=record.local_id,
                           attributes=transform(record, id_view, config, schema, temporal_policy))
            for record in report.valid
        ]
        outcomes = self.selector.choose_and_submit(object_type, prepared)
        if len(outcomes) != len(prepared):
            raise InvariantViolation(
                f"Transport returned {len(outcomes)} outcomes for {len(prepared)} {object_type} records"
            )

        succeeded = 0
        for outcome in outcomes:
            if outcome.success and outcome.remote_id:
                ids.set(outcome.local_id, outcome.remote_id)
                result.record_success(object_type, outcome.local_id, outcome.remote_id)
                succeeded += 1
            else:
                result.record_failure(object_type, outcome.local_id, outcome.error or "Unknown error")

        logger.info(f"{object_type}: {succeeded} created, {len(records) + len(rejected) - succeeded} failed")

    def preview(self, records: Iterable[LogicalRecord],
                config: Optional[InjectionConfig] = None) -> Dict[str, ValidationReport]:
        """
        Validate without submitting anything.

        Every input local id is treated as if it had been created, so only
        references to records outside the input (and missing fields) fail.
        """
        config = config or InjectionConfig()
        grouped = group_by_type(records)
        placeholders = {
            record.local_id: f"pending:{record.local_id}"
            for group in grouped.values()
            for record in group
        }
        reports: Dict[str, ValidationReport] = {}
        for object_type in self.graph.order_for(grouped.keys()):
            schema = self.describe(object_type)
            accepted, rejected = normalize_exclusive_relationships(grouped[object_type], schema, config)
            report = validate(accepted, placeholders, schema.required_fields if schema else None, config)
            report.failed = rejected + report.failed
            reports[object_type] = report
        return reports
