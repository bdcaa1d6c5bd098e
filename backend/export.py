"""
Export Utilities

Turn a list of leads into a downloadable file:
  - CSV   (RFC 4180 quoting; header row even when there are no leads)
  - Excel (.xlsx via pandas + openpyxl, single "Leads" sheet)
  - JSON  (plain list of lead dicts)

Usage:
    from export import leads_to_csv, leads_to_xlsx

    body = leads_to_csv(leads)
    blob = leads_to_xlsx(leads)
"""

import csv
import io
import logging
from typing import Iterable

import pandas as pd

from db.models import Lead

logger = logging.getLogger(__name__)

CSV_HEADERS = ["Business Name", "Email", "Phone", "Website", "Confidence Score", "Created At"]

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


def _row(lead: Lead) -> list:
    return [
        lead.business_name or "",
        lead.email or "",
        lead.phone or "",
        lead.website or "",
        lead.confidence_score if lead.confidence_score is not None else "",
        lead.created_at.isoformat() if lead.created_at else "",
    ]


def leads_to_csv(leads: Iterable[Lead]) -> str:
    """Fields containing commas, quotes or newlines are quoted, quotes doubled."""
    output = io.StringIO()
    writer = csv.writer(output, lineterminator="\n")
    writer.writerow(CSV_HEADERS)
    for lead in leads:
        writer.writerow(_row(lead))
    return output.getvalue()


def leads_to_xlsx(leads: Iterable[Lead]) -> bytes:
    df = pd.DataFrame([_row(lead) for lead in leads], columns=CSV_HEADERS)
    buffer = io.BytesIO()
    with pd.ExcelWriter(buffer, engine="openpyxl") as writer:
        df.to_excel(writer, sheet_name="Leads", index=False)
    logger.info("Exported %d leads to xlsx", len(df))
    return buffer.getvalue()


def export_filename(search_id: str, extension: str) -> str:
    return f"leads-{search_id}.{extension}"
