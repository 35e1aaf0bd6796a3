"""CSV and JSON serialization of audit entries for download."""

import csv
import io
import json
from dataclasses import dataclass
from datetime import date
from enum import Enum

from shield_audit.audit.models import AuditLogEntry

CSV_HEADERS = [
    "ID",
    "Timestamp",
    "Event Type",
    "User ID",
    "Patient ID",
    "Resource Type",
    "Resource ID",
    "Action",
    "IP Address",
    "User Agent",
    "Success",
    "Risk Level",
    "Details",
]

EMPTY_EXPORT_MESSAGE = "No audit logs found for the specified filters"


class ExportFormat(str, Enum):
    CSV = "csv"
    JSON = "json"

    @property
    def media_type(self) -> str:
        if self is ExportFormat.CSV:
            return "text/csv"
        return "application/json"


@dataclass(frozen=True)
class ExportResult:
    content: str
    media_type: str
    filename: str
    row_count: int


def _csv_row(entry: AuditLogEntry) -> list[str]:
    return [
        entry.id,
        entry.timestamp.isoformat(),
        entry.event_type.value,
        entry.user_id,
        entry.patient_id or "",
        entry.resource_type,
        entry.resource_id or "",
        entry.action,
        entry.ip_address or "",
        entry.user_agent or "",
        "Yes" if entry.success else "No",
        entry.risk_level.value,
        json.dumps(entry.details, sort_keys=True),
    ]


def entries_to_csv(entries: list[AuditLogEntry]) -> str:
    """Serialize entries to CSV.

    Fields containing a comma, quote, CR or LF are quoted with inner quotes
    doubled. An empty list yields the header and a single filler row.
    """
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_MINIMAL)
    writer.writerow(CSV_HEADERS)
    if not entries:
        writer.writerow([EMPTY_EXPORT_MESSAGE] + [""] * (len(CSV_HEADERS) - 1))
    for entry in entries:
        writer.writerow(_csv_row(entry))
    return buffer.getvalue()


def entries_to_json(entries: list[AuditLogEntry]) -> str:
    return json.dumps([entry.model_dump(mode="json") for entry in entries], indent=2)


def export_filename(time_range: str | None, export_format: ExportFormat, today: date) -> str:
    """Build ``audit-logs-{range}-{YYYY-MM-DD}.{ext}``; range is ``custom`` if unset."""
    return f"audit-logs-{time_range or 'custom'}-{today.isoformat()}.{export_format.value}"


def serialize(entries: list[AuditLogEntry], export_format: ExportFormat) -> str:
    if export_format is ExportFormat.CSV:
        return entries_to_csv(entries)
    return entries_to_json(entries)
