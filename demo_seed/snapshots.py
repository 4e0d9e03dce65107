"""
Snapshot capture and restore.

A snapshot holds the full creatable attribute set of demo records, captured
by id or discovered through the demo marker. Restore replays the captured
records through the injection engine with a fresh identifier table; the old
Salesforce ids are only used as local ids, so relationships between restored
records are rebuilt against the newly created ids. Lookups that cannot
resolve at create time (same-type hierarchies, self references) are set with
an update once the whole snapshot is in.
"""

import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, NamedTuple, Optional, Tuple, Union

from .cleanup import CleanupEngine
from .dependency_graph import INJECTION_ORDER, DependencyGraph, default_graph
from .exceptions import SeedError, SnapshotNotFoundError, SnapshotNotReadyError, TransportError
from .injector import InjectionEngine
from .mapper import parent_field_for, strip_system_fields
from .models import (
    LOCAL_ID_SUFFIX,
    CleanupResult,
    InjectionConfig,
    LogicalRecord,
    RestoreResult,
    Snapshot,
    SnapshotMetadata,
    SnapshotStatus,
    SnapshotType,
)
from .rest_api import MAX_BATCH_SIZE, RestApi, error_message
from .schema_cache import DescribeCache

logger = logging.getLogger(__name__)

DEFAULT_DEMO_MARKER = "[TestBox Demo Data]"
MARKER_FIELDS = ("Description", "Subject")
DISCOVERY_LIMIT = 10000


class SnapshotStore(ABC):
    @abstractmethod
    def save(self, snapshot: Snapshot) -> None:
        ...

    @abstractmethod
    def get(self, snapshot_id: str) -> Optional[Snapshot]:
        ...

    @abstractmethod
    def list(self, environment_id: Optional[str] = None) -> List[Snapshot]:
        ...

    @abstractmethod
    def delete(self, snapshot_id: str) -> bool:
        ...


class InMemorySnapshotStore(SnapshotStore):
    def __init__(self):
        self._snapshots: Dict[str, Snapshot] = {}
        self._lock = threading.Lock()

    def save(self, snapshot: Snapshot) -> None:
        with self._lock:
            self._snapshots[snapshot.id] = snapshot.model_copy(deep=True)

    def get(self, snapshot_id: str) -> Optional[Snapshot]:
        with self._lock:
            snapshot = self._snapshots.get(snapshot_id)
            return snapshot.model_copy(deep=True) if snapshot else None

    def list(self, environment_id: Optional[str] = None) -> List[Snapshot]:
        with self._lock:
            snapshots = [s.model_copy(deep=True) for s in self._snapshots.values()
                         if environment_id is None or s.environment_id == environment_id]
        return sorted(snapshots, key=lambda s: s.created_at)

    def delete(self, snapshot_id: str) -> bool:
        with self._lock:
            return self._snapshots.pop(snapshot_id, None) is not None


class FileSnapshotStore(SnapshotStore):
    """One JSON document per snapshot under a directory."""

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)

    def _path(self, snapshot_id: str) -> Path:
        return self.directory / f"{snapshot_id}.json"

    def save(self, snapshot: Snapshot) -> None:
        os.makedirs(self.directory, exist_ok=True)
        with open(self._path(snapshot.id), 'w', encoding='utf-8') as f:
            f.write(snapshot.model_dump_json(by_alias=True, indent=2))

    def get(self, snapshot_id: str) -> Optional[Snapshot]:
        path = self._path(snapshot_id)
        if not path.exists():
            return None
        with open(path, 'r', encoding='utf-8') as f:
            return Snapshot.model_validate_json(f.read())

    def list(self, environment_id: Optional[str] = None) -> List[Snapshot]:
        if not self.directory.exists():
            return []
        snapshots = []
        for path in sorted(self.directory.glob("*.json")):
            with open(path, 'r', encoding='utf-8') as f:
                snapshot = Snapshot.model_validate_json(f.read())
            if environment_id is None or snapshot.environment_id == environment_id:
                snapshots.append(snapshot)
        return sorted(snapshots, key=lambda s: s.created_at)

    def delete(self, snapshot_id: str) -> bool:
        path = self._path(snapshot_id)
        if not path.exists():
            return False
        path.unlink()
        return True


def _soql_string(value: str) -> str:
    return value.replace("\\", "\\\\").replace("'", "\\'")


class DeferredLookup(NamedTuple):
    """A lookup set after restore, once both ends have new ids."""
    object_type: str
    local_id: str
    field: str
    target_local_id: str


def plan_restore(snapshot: Snapshot, object_types: Optional[Iterable[str]] = None,
                 graph: DependencyGraph = default_graph) -> Tuple[List[LogicalRecord], List[DeferredLookup]]:
    """
    Turn captured rows into logical records keyed by their old Salesforce ids.

    Lookups pointing at a captured record of an earlier type become
    parentLocalId or <field>_localId pointers. Lookups to a captured record
    of the same or a later type cannot resolve while the record is created,
    so they are dropped from the record and returned as deferred lookups.
    Lookups to anything else (users, records outside the snapshot) are kept
    verbatim.
    """
    selected = set(object_types) if object_types is not None else None
    types = [t for t in graph.order_for(snapshot.record_data.keys()) if selected is None or t in selected]
    rank = {object_type: index for index, object_type in enumerate(types)}

    owner = {
        row["Id"]: object_type
        for object_type in types
        for row in snapshot.record_data.get(object_type, [])
        if row.get("Id")
    }

    records: List[LogicalRecord] = []
    deferred: List[DeferredLookup] = []
    for object_type in types:
        parent_field = parent_field_for(object_type)
        for row in snapshot.record_data.get(object_type, []):
            old_id = row.get("Id")
            if not old_id:
                continue
            attributes = strip_system_fields(row)
            parent_local_id = None
            for key in list(attributes):
                value = attributes[key]
                target_type = owner.get(value) if isinstance(value, str) else None
                if target_type is None:
                    continue
                attributes.pop(key)
                if rank[target_type] >= rank[object_type]:
                    deferred.append(DeferredLookup(object_type, old_id, key, value))
                elif key == parent_field:
                    parent_local_id = value
                else:
                    attributes[f"{key}{LOCAL_ID_SUFFIX}"] = value
            records.append(LogicalRecord(
                object_type=object_type,
                local_id=old_id,
                parent_local_id=parent_local_id,
                attributes=attributes,
            ))
    return records, deferred


def build_restore_records(snapshot: Snapshot, object_types: Optional[Iterable[str]] = None,
                          graph: DependencyGraph = default_graph) -> List[LogicalRecord]:
    return plan_restore(snapshot, object_types, graph)[0]


class SnapshotService:
    def __init__(self, rest_api: RestApi, injector: InjectionEngine, cleanup: CleanupEngine,
                 store: SnapshotStore, environment_id: str = "default",
                 schema_cache: Optional[DescribeCache] = None,
                 demo_marker: str = DEFAULT_DEMO_MARKER,
                 graph: DependencyGraph = default_graph,
                 now: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        self.rest_api = rest_api
        self.injector = injector
        self.cleanup = cleanup
        self.store = store
        self.environment_id = environment_id
        self.schema_cache = schema_cache or DescribeCache()
        self.demo_marker = demo_marker
        self.graph = graph
        self._now = now

    # --- capture -------------------------------------------------------------

    def _schema(self, object_type: str):
        return self.schema_cache.get(self.environment_id, object_type, self.rest_api.describe)

    def find_demo_record_ids(self, object_type: str) -> List[str]:
        """Ids of records whose filterable Description/Subject contains the demo marker."""
        schema = self._schema(object_type)
        marker_fields = [name for name in MARKER_FIELDS
                         if schema.field(name) is not None and schema.field(name).filterable]
        if not marker_fields:
            logger.debug(f"{object_type} has no filterable marker field; skipping discovery")
            return []

        pattern = _soql_string(self.demo_marker)
        where = " OR ".join(f"{name} LIKE '%{pattern}%'" for name in marker_fields)
        rows = self.rest_api.query(f"SELECT Id FROM {object_type} WHERE {where} LIMIT {DISCOVERY_LIMIT}")
        return [row["Id"] for row in rows if row.get("Id")]

    def fetch_record_data(self, object_type: str, ids: List[str]) -> List[Dict[str, Any]]:
        """Fetch Id plus every creatable field for the given records."""
        if not ids:
            return []
        schema = self._schema(object_type)
        fields = ["Id"] + [name for name in schema.createable_fields if name != "Id"]

        rows: List[Dict[str, Any]] = []
        for i in range(0, len(ids), MAX_BATCH_SIZE):
            batch = ids[i:i + MAX_BATCH_SIZE]
            id_list = ", ".join(f"'{_soql_string(record_id)}'" for record_id in batch)
            soql = f"SELECT {', '.join(fields)} FROM {object_type} WHERE Id IN ({id_list})"
            for row in self.rest_api.query(soql):
                rows.append({key: value for key, value in row.items() if key != "attributes"})
        return rows

    def capture(self, record_ids: Optional[Mapping[str, List[str]]] = None,
                object_types: Optional[Iterable[str]] = None):
        """
        Capture record ids and data per object type.

        Uses record_ids when given, otherwise discovers records by the demo
        marker. A failure for one type is logged and that type is skipped.
        """
        if record_ids is not None:
            types = self.graph.order_for(record_ids.keys())
        else:
            types = self.graph.order_for(object_types if object_types is not None else INJECTION_ORDER)

        captured_ids: Dict[str, List[str]] = {}
        captured_data: Dict[str, List[Dict[str, Any]]] = {}
        for object_type in types:
            try:
                if record_ids is not None:
                    ids = list(dict.fromkeys(record_ids.get(object_type) or []))
                else:
                    ids = self.find_demo_record_ids(object_type)
                if not ids:
                    continue
                rows = self.fetch_record_data(object_type, ids)
            except TransportError as e:
                logger.warning(f"Skipping {object_type} in snapshot: {e}")
                continue
            captured_ids[object_type] = [row["Id"] for row in rows]
            captured_data[object_type] = rows
            logger.info(f"Captured {len(rows)} {object_type} records")
        return captured_ids, captured_data

    def create_snapshot(self, name: str, description: Optional[str] = None,
                        snapshot_type: SnapshotType = SnapshotType.MANUAL,
                        record_ids: Optional[Mapping[str, List[str]]] = None,
                        object_types: Optional[Iterable[str]] = None,
                        tags: Optional[List[str]] = None,
                        created_by: Optional[str] = None) -> Snapshot:
        snapshot = Snapshot(
            name=name,
            description=description,
            environment_id=self.environment_id,
            type=snapshot_type,
            created_at=self._now(),
            metadata=SnapshotMetadata(tags=tags or [], created_by=created_by),
        )
        self.store.save(snapshot)

        try:
            captured_ids, captured_data = self.capture(record_ids, object_types)
        except SeedError as e:
            snapshot.status = SnapshotStatus.FAILED
            snapshot.error_message = str(e)
            self.store.save(snapshot)
            raise

        snapshot.record_ids = captured_ids
        snapshot.record_data = captured_data
        snapshot.metadata.object_counts = {t: len(rows) for t, rows in captured_data.items()}
        snapshot.metadata.total_records = sum(snapshot.metadata.object_counts.values())
        snapshot.size_bytes = len(json.dumps(captured_data, default=str).encode('utf-8'))
        snapshot.status = SnapshotStatus.READY
        self.store.save(snapshot)

        logger.info(f"Snapshot '{name}' ({snapshot.id}) ready: {snapshot.metadata.total_records} records")
        return snapshot

    def create_pre_injection_snapshot(self, description: Optional[str] = None) -> Snapshot:
        """Capture current demo data before an injection run."""
        timestamp = self._now().strftime("%Y-%m-%d %H:%M:%S")
        return self.create_snapshot(
            name=f"Pre-injection {timestamp}",
            description=description or "Automatic snapshot taken before data injection",
            snapshot_type=SnapshotType.PRE_INJECTION,
            tags=["pre-injection", "automatic"],
        )

    # --- lookup --------------------------------------------------------------

    def get_snapshot(self, snapshot_id: str) -> Snapshot:
        snapshot = self.store.get(snapshot_id)
        if snapshot is None:
            raise SnapshotNotFoundError(f"Snapshot {snapshot_id} not found")
        return snapshot

    def list_snapshots(self) -> List[Snapshot]:
        return self.store.list(self.environment_id)

    def delete_snapshot(self, snapshot_id: str) -> None:
        if not self.store.delete(snapshot_id):
            raise SnapshotNotFoundError(f"Snapshot {snapshot_id} not found")

    # --- restore -------------------------------------------------------------

    def restore(self, snapshot_id: str, delete_existing: bool = False,
                object_types: Optional[Iterable[str]] = None, dry_run: bool = False,
                config: Optional[InjectionConfig] = None,
                progress: Optional[Callable[[int, int], None]] = None) -> RestoreResult:
        snapshot = self.get_snapshot(snapshot_id)
        if snapshot.status != SnapshotStatus.READY:
            raise SnapshotNotReadyError(f"Snapshot {snapshot_id} is {snapshot.status.value}, not ready")

        selected = list(object_types) if object_types is not None else None
        records, deferred = plan_restore(snapshot, selected, self.graph)

        if dry_run:
            logger.info(f"Dry run: would restore {len(records)} records from snapshot {snapshot_id}")
            return RestoreResult(success=True, records_restored=len(records))

        snapshot.status = SnapshotStatus.RESTORING
        self.store.save(snapshot)
        try:
            deleted = self._delete_existing(snapshot, selected) if delete_existing else None
            result = self.injector.inject(records, config, progress)
            lookup_errors = self._apply_deferred_lookups(deferred, result.id_map())
        except SeedError as e:
            snapshot.status = SnapshotStatus.READY
            snapshot.error_message = str(e)
            self.store.save(snapshot)
            raise

        snapshot.status = SnapshotStatus.READY
        snapshot.restore_count += 1
        snapshot.restored_at = self._now()
        self.store.save(snapshot)

        errors = [f"{entry.object_type} {entry.local_id}: {entry.error}" for entry in result.failed]
        errors.extend(lookup_errors)
        logger.info(
            f"Restored {result.summary.successful}/{len(records)} records from snapshot {snapshot_id}"
        )
        return RestoreResult(
            success=result.summary.failed == 0 and not lookup_errors and not result.cancelled,
            records_restored=result.summary.successful,
            errors=errors,
            id_map=result.id_map(),
            deleted=deleted,
        )

    def _apply_deferred_lookups(self, deferred: List[DeferredLookup], id_map: Mapping[str, str]) -> List[str]:
        """Set lookups between restored records once both ends exist. Returns error strings."""
        updates: Dict[str, Dict[str, Dict[str, str]]] = {}
        for link in deferred:
            record_id = id_map.get(link.local_id)
            target_id = id_map.get(link.target_local_id)
            if not record_id or not target_id:
                logger.warning(
                    f"Leaving {link.object_type}.{link.field} empty on {link.local_id}: "
                    f"{link.target_local_id if record_id else link.local_id} was not restored"
                )
                continue
            updates.setdefault(link.object_type, {}).setdefault(record_id, {"Id": record_id})[link.field] = target_id

        errors: List[str] = []
        for object_type, by_id in updates.items():
            rows = list(by_id.values())
            for i in range(0, len(rows), MAX_BATCH_SIZE):
                batch = rows[i:i + MAX_BATCH_SIZE]
                try:
                    results = self.rest_api.update_batch(object_type, batch)
                except TransportError as e:
                    logger.error(f"Failed to set lookups on {len(batch)} {object_type} records: {e}")
                    errors.extend(f"{object_type} {row['Id']}: lookup update failed: {e}" for row in batch)
                    continue
                for row, outcome in zip(batch, results):
                    if not outcome.get("success"):
                        errors.append(
                            f"{object_type} {row['Id']}: lookup update failed: "
                            f"{error_message(outcome.get('errors'))}"
                        )
            logger.info(f"Set deferred lookups on {len(rows)} {object_type} records")
        return errors

    def _delete_existing(
self, snapshot: Snapshot, object_types: Optional[List[str]]) -> CleanupResult:
        """Delete current demo records plus any captured records that still exist."""
        types = object_types if object_types is not None else list(snapshot.record_data.keys())
        to_delete: Dict[str, List[str]] = {}
        for object_type in types:
            ids = list(snapshot.record_ids.get(object_type, []))
            try:
                ids.extend(self.find_demo_record_ids(object_type))
            except TransportError as e:
                logger.warning(f"Could not discover existing {object_type} demo records: {e}")
            if ids:
                to_delete[object_type] = ids
        return self.cleanup.cleanup(to_delete)

    # --- golden image --------------------------------------------------------

    def set_as_golden_image(self, snapshot_id: str) -> Snapshot:
        """Mark a ready snapshot as the environment's golden image, unmarking any other."""
        snapshot = self.get_snapshot(snapshot_id)
        if snapshot.status != SnapshotStatus.READY:
            raise SnapshotNotReadyError(f"Snapshot {snapshot_id} is {snapshot.status.value}, not ready")

        for other in self.store.list(snapshot.environment_id):
            if other.is_golden_image and other.id != snapshot.id:
                other.is_golden_image = False
                self.store.save(other)

        snapshot.is_golden_image = True
        snapshot.type = SnapshotType.GOLDEN_IMAGE
        self.store.save(snapshot)
        logger.info(f"Snapshot {snapshot_id} is now the golden image for {snapshot.environment_id}")
        return snapshot

    def get_golden_image(self) -> Optional[Snapshot]:
        for snapshot in self.store.list(self.environment_id):
            if snapshot.is_golden_image:
                return snapshot
        return None

    def reset_to_golden_image(self, config: Optional[InjectionConfig] = None,
                              progress: Optional[Callable[[int, int], None]] = None) -> RestoreResult:
        golden = self.get_golden_image()
        if golden is None:
            raise SnapshotNotFoundError(f"No golden image set for environment {self.environment_id}")
        return self.restore(golden.id, delete_existing=True, config=config, progress=progress)
