"""
Tests for export.py

Covers CSV quoting, the header-only empty export, xlsx output, and
download filenames.
"""

import csv
import io
from datetime import datetime, timezone

import pandas as pd
import pytest

from db.models import Lead
from export import CSV_HEADERS, export_filename, leads_to_csv, leads_to_xlsx


def _lead(**kw) -> Lead:
    defaults = {
        "business_name": "Acme Bakery",
        "email": "info@acme.com",
        "phone": "+1-415-555-0100",
        "website": "https://acme.com",
        "confidence_score": 100,
        "created_at": datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc),
    }
    defaults.update(kw)
    return Lead(**defaults)


# ═══════════════════════════════════════════════
# CSV
# ═══════════════════════════════════════════════

class TestLeadsToCsv:
    def test_header_row(self):
        body = leads_to_csv([_lead()])
        assert body.splitlines()[0] == "Business Name,Email,Phone,Website,Confidence Score,Created At"

    def test_empty_export_still_has_header(self):
        body = leads_to_csv([])
        assert body == ",".join(CSV_HEADERS) + "\n"

    def test_row_values(self):
        body = leads_to_csv([_lead()])
        row = body.splitlines()[1]
        assert row == "Acme Bakery,info@acme.com,+1-415-555-0100,https://acme.com,100,2026-03-01T12:00:00+00:00"

    def test_quotes_and_commas_escaped(self):
        body = leads_to_csv([_lead(business_name='Joe\'s "Best", Inc.')])
        assert '"Joe\'s ""Best"", Inc."' in body
        parsed = list(csv.reader(io.StringIO(body)))
        assert parsed[1][0] == 'Joe\'s "Best", Inc.'

    def test_missing_fields_blank(self):
        body = leads_to_csv([_lead(email=None, phone=None, website=None)])
        parsed = list(csv.reader(io.StringIO(body)))
        assert parsed[1][1:4] == ["", "", ""]


# ═══════════════════════════════════════════════
# Excel
# ═══════════════════════════════════════════════

class TestLeadsToXlsx:
    def test_roundtrip_sheet(self):
        blob = leads_to_xlsx([_lead(), _lead(business_name="Other Co", confidence_score=60)])
        df = pd.read_excel(io.BytesIO(blob), sheet_name="Leads")
        assert list(df.columns) == CSV_HEADERS
        assert len(df) == 2
        assert df.iloc[1]["Business Name"] == "Other Co"

    def test_empty_workbook_has_header(self):
        blob = leads_to_xlsx([])
        df = pd.read_excel(io.BytesIO(blob), sheet_name="Leads")
        assert list(df.columns) == CSV_HEADERS
        assert df.empty


@pytest.mark.parametrize("ext", ["csv", "xlsx"])
def test_export_filename(ext):
    assert export_filename("abc-123", ext) == f"leads-abc-123.{ext}"
