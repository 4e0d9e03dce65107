"""
Field transforms applied to a validated record before submission.

transform() is a pure function of the record, the identifier table, the
injection configuration and (optionally) the object's describe metadata:

1. drop bookkeeping fields (localId, parentLocalId, anything starting with "_")
2. resolve relationship fields from parentLocalId or <field>_localId pointers
3. apply configured field renames
4. fill configured defaults
5. apply the record type override / default record type
6. (optional) substitute defaults for malformed date/datetime values
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple

import pandas as pd

from .models import (
    INTERNAL_PREFIX,
    LOCAL_ID_SUFFIX,
    AttributeMap,
    InjectionConfig,
    LogicalRecord,
    ObjectSchema,
    RejectedRecord,
    is_empty,
)

logger = logging.getLogger(__name__)

BOOKKEEPING_FIELDS = ("localId", "parentLocalId")

# Lookup fields per object and the object type each one points at
RELATIONSHIP_FIELDS: Dict[str, Dict[str, str]] = {
    "Contact": {"AccountId": "Account"},
    "Opportunity": {"AccountId": "Account"},
    "Case": {"AccountId": "Account", "ContactId": "Contact"},
    "CampaignMember": {"CampaignId": "Campaign", "ContactId": "Contact", "LeadId": "Lead"},
    "Task": {"WhoId": "Contact", "WhatId": "Opportunity"},
    "Event": {"WhoId": "Contact", "WhatId": "Opportunity"},
    "EmailMessage": {"RelatedToId": "Opportunity", "ParentId": "Case"},
}

# Object type that parentLocalId refers to
PARENT_OBJECT_MAP: Dict[str, str] = {
    "Contact": "Account",
    "Opportunity": "Account",
    "Case": "Account",
    "CampaignMember": "Campaign",
    "Task": "Contact",
    "Event": "Contact",
    "EmailMessage": "Opportunity",
}

# Pairs of lookups where an org normally exposes only one as creatable
MUTUALLY_EXCLUSIVE_RELATIONSHIPS: Dict[str, Tuple[str, str]] = {
    "EmailMessage": ("ParentId", "RelatedToId"),
}

# Master record type id shared by every org; never written explicitly
MASTER_RECORD_TYPE_ID = "012000000000000AAA"

# System-owned fields stripped from captured records before restore
SYSTEM_FIELDS = [
    "attributes",
    "Id",
    "IsDeleted",
    "CreatedDate",
    "CreatedById",
    "LastModifiedDate",
    "LastModifiedById",
    "SystemModstamp",
    "LastActivityDate",
    "LastViewedDate",
    "LastReferencedDate",
]


def parent_field_for(object_type: str) -> Optional[str]:
    """The relationship field that parentLocalId fills for this type, if any."""
    parent_type = PARENT_OBJECT_MAP.get(object_type)
    for field_name, target in RELATIONSHIP_FIELDS.get(object_type, {}).items():
        if target == parent_type:
            return field_name
    return None


def strip_internal_fields(attributes: Mapping[str, Any]) -> AttributeMap:
    return {
        key: value
        for key, value in attributes.items()
        if key not in BOOKKEEPING_FIELDS and not key.startswith(INTERNAL_PREFIX)
    }


def strip_system_fields(data: Mapping[str, Any]) -> AttributeMap:
    """Remove Salesforce-owned fields and nulls from a queried record."""
    return {
        key: value
        for key, value in data.items()
        if key not in SYSTEM_FIELDS and value is not None
    }


def resolve_relationships(record: LogicalRecord, data: AttributeMap,
                          ids: Mapping[str, str]) -> AttributeMap:
    """Rewrite local pointers to Salesforce ids. Pointer keys never survive."""
    object_type = record.object_type
    parent_type = PARENT_OBJECT_MAP.get(object_type)
    parent_remote = ids.get(record.parent_local_id) if record.parent_local_id else None

    for field_name, target_type in RELATIONSHIP_FIELDS.get(object_type, {}).items():
        pointer = f"{field_name}{LOCAL_ID_SUFFIX}"
        if parent_remote and target_type == parent_type:
            data[field_name] = parent_remote
        elif pointer in data:
            local_value = data[pointer]
            remote = ids.get(local_value) if isinstance(local_value, str) else None
            if remote:
                data[field_name] = remote
        data.pop(pointer, None)

    # Generic *_localId pointers (custom objects, unlisted lookups)
    for key in [k for k in data if k.endswith(LOCAL_ID_SUFFIX)]:
        local_value = data.pop(key)
        remote = ids.get(local_value) if isinstance(local_value, str) else None
        if remote:
            data[key[: -len(LOCAL_ID_SUFFIX)]] = remote

    return data


def apply_field_mappings(data: AttributeMap, mappings: Mapping[str, str]) -> AttributeMap:
    """
    Rename source fields to target fields.

    The value moves only when the target is empty; the source key is removed
    either way. When two sources map to the same target the first one in the
    mapping wins and the later ones are dropped.
    """
    if not mappings:
        return data

    result = dict(data)
    for source, target in mappings.items():
        if not source or not target or source not in result:
            continue
        if is_empty(result.get(target)):
            result[target] = result[source]
        if source != target:
            del result[source]
    return result


def apply_field_defaults(data: AttributeMap, defaults: Mapping[str, Any]) -> AttributeMap:
    """Fill fields that are absent or empty. Generated content always wins."""
    if not defaults:
        return data

    result = dict(data)
    for field_name, value in defaults.items():
        if is_empty(result.get(field_name)):
            result[field_name] = value
    return result


def resolve_record_type_id(schema: Optional[ObjectSchema], value: str) -> Optional[str]:
    """Match a configured record type by id, then name, then developer name."""
    if not value or schema is None:
        return None

    for subtype in schema.subtypes:
        if subtype.id == value:
            return subtype.id

    normalized = value.lower()
    for subtype in schema.subtypes:
        if subtype.name and subtype.name.lower() == normalized:
            return subtype.id
    for subtype in schema.subtypes:
        if subtype.internal_name and subtype.internal_name.lower() == normalized:
            return subtype.id
    return None


def apply_record_type(data: AttributeMap, schema: Optional[ObjectSchema],
                      override: Optional[str]) -> AttributeMap:
    result = dict(data)
    if override:
        # Configured value is forced; verbatim when describe cannot resolve it
        result["RecordTypeId"] = resolve_record_type_id(schema, override) or override
        return result

    if schema is None or not is_empty(result.get("RecordTypeId")):
        return result

    record_type_field = schema.field("RecordTypeId")
    default_id = schema.default_subtype_id
    if record_type_field and record_type_field.createable and default_id and default_id != MASTER_RECORD_TYPE_ID:
        result["RecordTypeId"] = default_id
    return result


@dataclass(frozen=True)
class TemporalDefaultPolicy:
    """
    Named substitution policy for date/datetime fields.

    Empty or unparseable values are replaced with reference_time + offset
    (30 days for dates, 7 days for datetimes). Parseable values are
    normalised to the formats the REST API expects.
    """

    reference_time: datetime
    date_offset: timedelta = timedelta(days=30)
    datetime_offset: timedelta = timedelta(days=7)

    def default_date(self) -> str:
        return (self.reference_time + self.date_offset).date().isoformat()

    def default_datetime(self) -> str:
        return _format_datetime(self.reference_time + self.datetime_offset)

    def normalize(self, value: Any, field_type: str) -> str:
        if field_type == "date":
            # Dates keep the calendar day as written, whatever the offset
            parsed = _parse_timestamp(value, utc=False)
            return parsed.date().isoformat() if parsed is not None else self.default_date()
        parsed = _parse_timestamp(value)
        return _format_datetime(parsed) if parsed is not None else self.default_datetime()

    def apply(self, data: AttributeMap, field_types: Mapping[str, str]) -> AttributeMap:
        result = dict(data)
        for field_name, value in data.items():
            field_type = field_types.get(field_name)
            if field_type not in ("date", "datetime"):
                continue
            normalized = self.normalize(value, field_type)
            if normalized != value:
                logger.debug(f"Normalised {field_type} field {field_name}: {value!r} -> {normalized}")
            result[field_name] = normalized
        return result


def _parse_timestamp(value: Any, utc: bool = True) -> Optional[datetime]:
    if not isinstance(value, str) or not value.strip():
        return None
    parsed = pd.to_datetime(value, errors="coerce", utc=utc)
    if pd.isna(parsed):
        return None
    return parsed.to_pydatetime()


def _format_datetime(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.000Z")


def normalize_exclusive_relationships(
    records: List[LogicalRecord],
    schema: Optional[ObjectSchema],
    config: InjectionConfig,
) -> Tuple[List[LogicalRecord], List[RejectedRecord]]:
    """
    Settle mutually exclusive lookups (EmailMessage ParentId vs RelatedToId).

    If describe reports exactly one of the pair as creatable, pointers to the
    other are moved onto it. If both are creatable the choice is left to the
    operator: records carrying both pointers are rejected unless
    fieldMappings for the type maps one field onto the other.
    """
    if not records or schema is None:
        return records, []

    object_type = records[0].object_type
    pair = MUTUALLY_EXCLUSIVE_RELATIONSHIPS.get(object_type)
    if not pair:
        return records, []

    createable = set(schema.createable_fields)
    first, second = pair
    available = [name for name in pair if name in createable]
    if not available:
        return records, []

    if len(available) == 1:
        target = available[0]
        source = second if target == first else first
        target_pointer = f"{target}{LOCAL_ID_SUFFIX}"
        source_pointer = f"{source}{LOCAL_ID_SUFFIX}"
        normalized = []
        for record in records:
            if source_pointer not in record.attributes:
                normalized.append(record)
                continue
            attributes = dict(record.attributes)
            pointer_value = attributes.pop(source_pointer)
            if is_empty(attributes.get(target_pointer)) and pointer_value:
                attributes[target_pointer] = pointer_value
            normalized.append(record.model_copy(update={"attributes": attributes}))
        return normalized, []

    mappings = config.field_mappings.get(object_type, {})
    if mappings.get(first) == second or mappings.get(second) == first:
        return records, []

    accepted: List[LogicalRecord] = []
    rejected: List[RejectedRecord] = []
    for record in records:
        refs = record.reference_fields()
        if not is_empty(refs.get(first)) and not is_empty(refs.get(second)):
            rejected.append(RejectedRecord(
                record=record,
                error=(
                    f"ambiguous relationship: both {first} and {second} are creatable; "
                    f"configure fieldMappings.{object_type} to choose one"
                ),
            ))
        else:
            accepted.append(record)
    if rejected:
        logger.warning(
            f"{len(rejected)} {object_type} records reference both {first} and {second}; "
            f"add a fieldMappings entry to choose one"
        )
    return accepted, rejected


def transform(record: LogicalRecord, ids: Mapping[str, str], config: InjectionConfig,
              schema: Optional[ObjectSchema] = None,
              temporal_policy: Optional[TemporalDefaultPolicy] = None) -> AttributeMap:
    """Produce the attribute map to submit for one record. Inputs are not modified."""
    object_type = record.object_type

    data = strip_internal_fields(record.attributes)
    data = resolve_relationships(record, data, ids)
    data = apply_field_mappings(data, config.field_mappings.get(object_type, {}))
    data = apply_field_defaults(data, config.field_defaults.get(object_type, {}))
    data = apply_record_type(data, schema, config.record_type_overrides.get(object_type))
    if temporal_policy is not None and schema is not None:
        data = temporal_policy.apply(data, schema.field_types)
    return data
