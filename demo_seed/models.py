"""
Data model shared by the injection, cleanup and snapshot engines.

All wire-facing models accept the camelCase keys used by the generator and
the dataset store (objectType, localId, ...) as well as the snake_case
attribute names.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

# Closed variant for attribute values. Nested maps are allowed for compound
# fields (addresses, geolocations); lists are not.
AttributeValue = Union[bool, int, float, str, None, Dict[str, Any]]
AttributeMap = Dict[str, AttributeValue]

INTERNAL_PREFIX = "_"
LOCAL_ID_SUFFIX = "_localId"


def is_empty(value: Any) -> bool:
    """None and blank strings count as absent for mapping/default/required checks."""
    return value is None or (isinstance(value, str) and value == "")


class _Model(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class LogicalRecord(_Model):
    """A generated record before it exists in Salesforce."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    object_type: str = Field(alias="objectType")
    local_id: str = Field(alias="localId")
    parent_local_id: Optional[str] = Field(default=None, alias="parentLocalId")
    attributes: AttributeMap = Field(default_factory=dict)

    @classmethod
    def from_generated(cls, object_type: str, data: Dict[str, Any]) -> "LogicalRecord":
        """Build a record from generator output carrying _localId/_parentLocalId keys."""
        attributes = {k: v for k, v in data.items() if k not in ("_localId", "_parentLocalId")}
        return cls(
            object_type=object_type,
            local_id=str(data["_localId"]),
            parent_local_id=data.get("_parentLocalId") or None,
            attributes=attributes,
        )

    def reference_fields(self) -> Dict[str, Any]:
        """Return the *_localId pointer attributes keyed by their target field name."""
        return {
            key[: -len(LOCAL_ID_SUFFIX)]: value
            for key, value in self.attributes.items()
            if key.endswith(LOCAL_ID_SUFFIX)
        }


class InjectionConfig(_Model):
    """Operator supplied, per-environment transform configuration."""

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="forbid")

    record_type_overrides: Dict[str, str] = Field(default_factory=dict, alias="recordTypeOverrides")
    field_mappings: Dict[str, Dict[str, str]] = Field(default_factory=dict, alias="fieldMappings")
    field_defaults: Dict[str, AttributeMap] = Field(default_factory=dict, alias="fieldDefaults")


# ---------------------------------------------------------------------------
# Describe metadata
# ---------------------------------------------------------------------------

class FieldInfo(_Model):
    name: str
    createable: bool = False
    required: bool = False
    type: str = "string"
    filterable: bool = False
    reference_to: List[str] = Field(default_factory=list)


class Subtype(_Model):
    """A record type as reported by describe."""

    id: str
    name: str = ""
    internal_name: str = ""
    is_default: bool = False


class ObjectSchema(_Model):
    object_type: str
    fields: List[FieldInfo] = Field(default_factory=list)
    subtypes: List[Subtype] = Field(default_factory=list)

    @classmethod
    def from_describe(cls, object_type: str, describe: Dict[str, Any]) -> "ObjectSchema":
        """Normalise a Salesforce sObject describe payload."""
        fields = []
        for raw in describe.get("fields") or []:
            createable = bool(raw.get("createable"))
            # Same rule Salesforce uses for the "required" asterisk in the UI
            required = (
                createable
                and raw.get("nillable") is False
                and raw.get("defaultedOnCreate") is False
                and not raw.get("calculated")
                and not raw.get("autoNumber")
            )
            fields.append(FieldInfo(
                name=raw["name"],
                createable=createable,
                required=required,
                type=raw.get("type") or "string",
                filterable=bool(raw.get("filterable")),
                reference_to=list(raw.get("referenceTo") or []),
            ))

        subtypes = [
            Subtype(
                id=info["recordTypeId"],
                name=info.get("name") or "",
                internal_name=info.get("developerName") or "",
                is_default=bool(info.get("defaultRecordTypeMapping")),
            )
            for info in describe.get("recordTypeInfos") or []
            if info.get("recordTypeId")
        ]
        return cls(object_type=object_type, fields=fields, subtypes=subtypes)

    def field(self, name: str) -> Optional[FieldInfo]:
        for info in self.fields:
            if info.name == name:
                return info
        return None

    @property
    def required_fields(self) -> List[str]:
        return [f.name for f in self.fields if f.required]

    @property
    def createable_fields(self) -> List[str]:
        return [f.name for f in self.fields if f.createable]

    @property
    def field_types(self) -> Dict[str, str]:
        return {f.name: f.type for f in self.fields}

    @property
    def default_subtype_id(self) -> Optional[str]:
        for subtype in self.subtypes:
            if subtype.is_default:
                return subtype.id
        return None


# ---------------------------------------------------------------------------
# Validation / transport
# ---------------------------------------------------------------------------

class ValidationOutcome(_Model):
    valid: bool
    reasons: List[str] = Field(default_factory=list)

    @property
    def error(self) -> str:
        return "; ".join(self.reasons)


class RejectedRecord(_Model):
    record: LogicalRecord
    error: str


class ValidationReport(_Model):
    valid: List[LogicalRecord] = Field(default_factory=list)
    failed: List[RejectedRecord] = Field(default_factory=list)


class PreparedRecord(_Model):
    """A transformed attribute map ready for submission, keyed by its local id."""

    local_id: str = Field(alias="localId")
    attributes: AttributeMap = Field(default_factory=dict)


class SubmissionOutcome(_Model):
    local_id: str = Field(alias="localId")
    success: bool
    remote_id: Optional[str] = Field(default=None, alias="remoteId")
    error: Optional[str] = None


class DeleteOutcome(_Model):
    remote_id: str = Field(alias="remoteId")
    success: bool
    error: Optional[str] = None


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

MAX_ERROR_SAMPLES = 3


class SuccessEntry(_Model):
    local_id: str = Field(alias="localId")
    remote_id: str = Field(alias="remoteId")
    object_type: Optional[str] = Field(default=None, alias="objectType")


class FailureEntry(_Model):
    local_id: str = Field(alias="localId")
    error: str
    object_type: Optional[str] = Field(default=None, alias="objectType")


class InjectionSummary(_Model):
    total: int = 0
    successful: int = 0
    failed: int = 0
    not_processed: int = Field(default=0, alias="notProcessed")


class InjectionResult(_Model):
    """Append-only result of one injection (or restore) run."""

    success: List[SuccessEntry] = Field(default_factory=list)
    failed: List[FailureEntry] = Field(default_factory=list)
    summary: InjectionSummary = Field(default_factory=InjectionSummary)
    not_processed: List[str] = Field(default_factory=list, alias="notProcessed")
    cancelled: bool = False
    error_samples: Dict[str, List[str]] = Field(default_factory=dict, alias="errorSamples")

    def record_success(self, object_type: str, local_id: str, remote_id: str) -> None:
        self.success.append(SuccessEntry(local_id=local_id, remote_id=remote_id, object_type=object_type))
        self.summary.successful += 1

    def record_failure(self, object_type: str, local_id: str, error: str) -> None:
        self.failed.append(FailureEntry(local_id=local_id, error=error, object_type=object_type))
        self.summary.failed += 1
        samples = self.error_samples.setdefault(object_type, [])
        if len(samples) < MAX_ERROR_SAMPLES and error not in samples:
            samples.append(error)

    def mark_not_processed(self, local_ids: List[str]) -> None:
        self.not_processed.extend(local_ids)
        self.summary.not_processed += len(local_ids)

    def id_map(self) -> Dict[str, str]:
        return {entry.local_id: entry.remote_id for entry in self.success}


class CleanupResult(_Model):
    success: int = 0
    failed: int = 0
    success_ids: List[str] = Field(default_factory=list, alias="successIds")
    failed_ids: List[str] = Field(default_factory=list, alias="failedIds")
    error_samples: Dict[str, List[str]] = Field(default_factory=dict, alias="errorSamples")

    def record(self, object_type: str, outcome: DeleteOutcome) -> None:
        if outcome.success:
            self.success += 1
            self.success_ids.append(outcome.remote_id)
            return
        self.failed += 1
        self.failed_ids.append(outcome.remote_id)
        samples = self.error_samples.setdefault(object_type, [])
        if outcome.error and len(samples) < MAX_ERROR_SAMPLES and outcome.error not in samples:
            samples.append(outcome.error)


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------

class SnapshotStatus(str, Enum):
    CREATING = "creating"
    READY = "ready"
    RESTORING = "restoring"
    FAILED = "failed"


class SnapshotType(str, Enum):
    MANUAL = "manual"
    AUTO = "auto"
    PRE_INJECTION = "pre_injection"
    GOLDEN_IMAGE = "golden_image"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SnapshotMetadata(_Model):
    total_records: int = Field(default=0, alias="totalRecords")
    object_counts: Dict[str, int] = Field(default_factory=dict, alias="objectCounts")
    tags: List[str] = Field(default_factory=list)
    created_by: Optional[str] = Field(default=None, alias="createdBy")


class Snapshot(_Model):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    description: Optional[str] = None
    environment_id: str = Field(alias="environmentId")
    status: SnapshotStatus = SnapshotStatus.CREATING
    type: SnapshotType = SnapshotType.MANUAL
    is_golden_image: bool = Field(default=False, alias="isGoldenImage")
    record_ids: Dict[str, List[str]] = Field(default_factory=dict, alias="recordIds")
    record_data: Dict[str, List[Dict[str, Any]]] = Field(default_factory=dict, alias="recordData")
    metadata: SnapshotMetadata = Field(default_factory=SnapshotMetadata)
    size_bytes: int = Field(default=0, alias="sizeBytes")
    error_message: Optional[str] = Field(default=None, alias="errorMessage")
    created_at: datetime = Field(default_factory=_utcnow, alias="createdAt")
    restored_at: Optional[datetime] = Field(default=None, alias="restoredAt")
    restore_count: int = Field(default=0, alias="restoreCount")


class RestoreResult(_Model):
    success: bool
    records_restored: int = Field(default=0, alias="recordsRestored")
    errors: List[str] = Field(default_factory=list)
    id_map: Dict[str, str] = Field(default_factory=dict, alias="idMap")
    deleted: Optional[CleanupResult] = None
