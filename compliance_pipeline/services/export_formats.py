"""
Export file renderers

Each renderer turns already-filtered and already-redacted records (plain
JSON-compatible dicts) into file bytes.
"""

import csv
import io
import json
from typing import Any, Callable, Dict, List

from openpyxl import Workbook

from compliance_pipeline.models.export import ExportFormat

Record = Dict[str, Any]

XLSX_SHEET_TITLE = "Audit Logs"


def _columns(records: List[Record]) -> List[str]:
    """Union of record keys in order of first appearance"""
    columns: List[str] = []
    seen = set()
    for record in records:
        for key in record:
            if key not in seen:
                seen.add(key)
                columns.append(key)
    return columns


def _flatten(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True, ensure_ascii=False)
    return value


def render_csv(records: List[Record], metadata: Record) -> bytes:
    """Comma separated, RFC 4180 quoting; no records gives an empty body"""
    if not records:
        return b""
    columns = _columns(records)
    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(columns)
    for record in records:
        writer.writerow([_flatten(record.get(column)) for column in columns])
    return output.getvalue().encode("utf-8")


def render_json(records: List[Record], metadata: Record) -> bytes:
    document = {
        "export_metadata": metadata,
        "audit_logs": records,
    }
    return json.dumps(document, indent=2, ensure_ascii=False, default=str).encode("utf-8")


def render_xlsx(records: List[Record], metadata: Record) -> bytes:
    workbook = Workbook()
    sheet = workbook.active
    sheet.title = XLSX_SHEET_TITLE

    columns = _columns(records)
    if columns:
        sheet.append(columns)
    for record in records:
        sheet.append([_flatten(record.get(column)) for column in columns])

    output = io.BytesIO()
    workbook.save(output)
    return output.getvalue()


def escape_xml(value: Any) -> str:
    if value is None:
        return ""
    return (
        str(value)
        .replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
        .replace("'", "&#39;")
    )


def render_xml(records: List[Record], metadata: Record) -> bytes:
    lines = [
        '<?xml version="1.0" encoding="UTF-8"?>',
        "<audit_export>",
        "  <metadata>",
    ]
    for key, value in metadata.items():
        lines.append(f"    <{key}>{escape_xml(_flatten(value))}</{key}>")
    lines.append("  </metadata>")
    lines.append("  <audit_logs>")
    for record in records:
        lines.append("    <audit_log>")
        for key, value in record.items():
            lines.append(f"      <{key}>{escape_xml(_flatten(value))}</{key}>")
        lines.append("    </audit_log>")
    lines.append("  </audit_logs>")
    lines.append("</audit_export>")
    return ("\n".join(lines) + "\n").encode("utf-8")


def _pdf_text(value: Any) -> str:
    return str(value).replace("\\", "\\\\").replace("(", "\\(").replace(")", "\\)")


def render_pdf(records: List[Record], metadata: Record) -> bytes:
    """
    Single-page summary PDF

    A placeholder report: export id, generation time and record count.
    Individual entries are not rendered.
    """
    lines = [
        "Audit Export Report",
        f"Export ID: {metadata.get('export_id', '')}",
        f"Generated: {metadata.get('generated_at', '')}",
        f"Records: {len(records)}",
        f"Scope: {metadata.get('export_scope', '')}",
    ]
    text_ops = ["BT", "/F1 12 Tf", "72 720 Td", "16 TL"]
    for line in lines:
        text_ops.append(f"({_pdf_text(line)}) Tj T*")
    text_ops.append("ET")
    stream = "\n".join(text_ops).encode("latin-1", errors="replace")

    objects = [
        b"<< /Type /Catalog /Pages 2 0 R >>",
        b"<< /Type /Pages /Kids [3 0 R] /Count 1 >>",
        b"<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] "
        b"/Resources << /Font << /F1 4 0 R >> >> /Contents 5 0 R >>",
        b"<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica >>",
        b"<< /Length " + str(len(stream)).encode("ascii") + b" >>\nstream\n" + stream + b"\nendstream",
    ]

    output = io.BytesIO()
    output.write(b"%PDF-1.4\n")
    offsets = []
    for number, body in enumerate(objects, start=1):
        offsets.append(output.tell())
        output.write(f"{number} 0 obj\n".encode("ascii") + body + b"\nendobj\n")

    xref_offset = output.tell()
    output.write(f"xref\n0 {len(objects) + 1}\n".encode("ascii"))
    output.write(b"0000000000 65535 f \n")
    for offset in offsets:
        output.write(f"{offset:010d} 00000 n \n".encode("ascii"))
    output.write(
        f"trailer\n<< /Size {len(objects) + 1} /Root 1 0 R >>\n"
        f"startxref\n{xref_offset}\n%%EOF\n".encode("ascii")
    )
    return output.getvalue()


RENDERERS: Dict[ExportFormat, Callable[[List[Record], Record], bytes]] = {
    ExportFormat.CSV: render_csv,
    ExportFormat.JSON: render_json,
    ExportFormat.XLSX: render_xlsx,
    ExportFormat.XML: render_xml,
    ExportFormat.PDF: render_pdf,
}


def render(export_format: ExportFormat, records: List[Record], metadata: Record) -> bytes:
    return RENDERERS[ExportFormat(export_format)](records, metadata)
