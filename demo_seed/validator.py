"""
Pre-flight validation of logical records.

Validation is pure and always runs before any transform or API call, so a
record rejected here never appears in a transport payload.
"""

from typing import Dict, Iterable, List, Mapping, Optional

from .mapper import BOOKKEEPING_FIELDS, apply_field_defaults, apply_field_mappings, parent_field_for
from .models import (
    INTERNAL_PREFIX,
    LOCAL_ID_SUFFIX,
    InjectionConfig,
    LogicalRecord,
    RejectedRecord,
    ValidationOutcome,
    ValidationReport,
    is_empty,
)

# Conservative minimum used whether or not describe metadata is available
BUILTIN_REQUIRED_FIELDS: Dict[str, List[str]] = {
    "Account": ["Name"],
    "Contact": ["LastName"],
    "Lead": ["LastName", "Company"],
    "Campaign": ["Name"],
    "Opportunity": ["Name", "StageName", "CloseDate"],
    "Task": ["Subject"],
    "Event": ["Subject", "StartDateTime", "EndDateTime"],
    "EmailMessage": ["Subject", "TextBody"],
}

PARENT_ERROR = "missing or invalid parent reference"


def _effective_attributes(record: LogicalRecord, config: Optional[InjectionConfig]) -> Dict:
    """Attributes as they will look after renames and defaults are applied."""
    data = dict(record.attributes)
    if config is None:
        return data
    data = apply_field_mappings(data, config.field_mappings.get(record.object_type, {}))
    return apply_field_defaults(data, config.field_defaults.get(record.object_type, {}))


def validate_record(record: LogicalRecord, ids: Mapping[str, str],
                    required_fields: Optional[Iterable[str]] = None,
                    config: Optional[InjectionConfig] = None) -> ValidationOutcome:
    reasons: List[str] = []
    object_type = record.object_type
    data = _effective_attributes(record, config)

    parent_resolved = bool(record.parent_local_id) and record.parent_local_id in ids
    if record.parent_local_id and not parent_resolved:
        reasons.append(PARENT_ERROR)

    for key, value in record.attributes.items():
        if key in BOOKKEEPING_FIELDS or key.startswith(INTERNAL_PREFIX):
            continue
        if not key.endswith(LOCAL_ID_SUFFIX) or is_empty(value):
            continue
        if not isinstance(value, str) or value not in ids:
            reasons.append(f"missing or invalid reference {key}")

    parent_field = parent_field_for(object_type)
    has_override = bool(config and config.record_type_overrides.get(object_type))

    required: List[str] = list(BUILTIN_REQUIRED_FIELDS.get(object_type, []))
    for field_name in required_fields or []:
        if field_name not in required:
            required.append(field_name)

    for field_name in required:
        if not is_empty(data.get(field_name)):
            continue
        pointer = data.get(f"{field_name}{LOCAL_ID_SUFFIX}")
        if isinstance(pointer, str) and pointer in ids:
            continue
        if field_name == parent_field and parent_resolved:
            continue
        if field_name == "RecordTypeId" and has_override:
            continue
        reasons.append(f"missing field {field_name}")

    return ValidationOutcome(valid=not reasons, reasons=reasons)


def validate(records: Iterable[LogicalRecord], ids: Mapping[str, str],
             required_fields: Optional[Iterable[str]] = None,
             config: Optional[InjectionConfig] = None) -> ValidationReport:
    """Split records into valid ones and rejected ones with a joined error string."""
    required = list(required_fields or [])
    report = ValidationReport()
    for record in records:
        outcome = validate_record(record, ids, required, config)
        if outcome.valid:
            report.valid.append(record)
        else:
            report.failed.append(RejectedRecord(record=record, error=outcome.error))
    return report
