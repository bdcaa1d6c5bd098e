"""
Tests for bulk_actions.py

Covers tag creation and listing, each bulk action type, organization
scoping, and failure recording.
"""

import base64
import json

import pytest
from sqlalchemy import func, select

from conftest import (
    TEST_ORG_PAID,
    TEST_ORG_TRIAL,
    TEST_USER_MEMBER,
    TEST_USER_OWNER,
    add_leads,
    add_search,
)
from bulk_actions import create_tag, list_bulk_actions, list_tags, run_bulk_action, validate_lead_data
from db.models import BulkAction, Lead, LeadMetadata, LeadTagAssignment
from errors import AccessDenied, Conflict
from validation import BulkActionRequest, TagCreate


async def _seed(db_session):
    search = await add_search(db_session)
    return await add_leads(db_session, search, [
        {"business_name": "Golden Crust", "email": "hi@goldencrust.com", "phone": "+1 415 555 0100",
         "website": "https://goldencrust.com"},
        {"business_name": "X", "email": "x@x.com"},
        {"business_name": "No Contact Co"},
    ])


def _request(action_type, lead_ids, **action_data) -> BulkActionRequest:
    return BulkActionRequest(
        organization_id=TEST_ORG_PAID,
        action_type=action_type,
        lead_ids=lead_ids,
        action_data=action_data,
    )


async def _count(db, model) -> int:
    return (await db.execute(select(func.count()).select_from(model))).scalar_one()


# ═══════════════════════════════════════════════
# Tags
# ═══════════════════════════════════════════════

class TestTags:
    @pytest.mark.asyncio
    async def test_create_and_list(self, db_session):
        tag = await create_tag(db_session, TEST_USER_OWNER, TagCreate(organization_id=TEST_ORG_PAID, name="Hot"))
        assert tag["color"] == "#3B82F6"
        assert tag["created_by"] == TEST_USER_OWNER

        tags = await list_tags(db_session, TEST_USER_OWNER, TEST_ORG_PAID)
        assert [(t["name"], t["usage_count"]) for t in tags] == [("Hot", 0)]

    @pytest.mark.asyncio
    async def test_duplicate_name(self, db_session):
        body = TagCreate(organization_id=TEST_ORG_PAID, name="Hot")
        await create_tag(db_session, TEST_USER_OWNER, body)
        with pytest.raises(Conflict, match="Tag with this name already exists"):
            await create_tag(db_session, TEST_USER_OWNER, body)

    @pytest.mark.asyncio
    async def test_same_name_other_org(self, db_session):
        await create_tag(db_session, TEST_USER_OWNER, TagCreate(organization_id=TEST_ORG_PAID, name="Hot"))
        tag = await create_tag(db_session, TEST_USER_OWNER, TagCreate(organization_id=TEST_ORG_TRIAL, name="Hot"))
        assert tag["organization_id"] == TEST_ORG_TRIAL

    @pytest.mark.asyncio
    async def test_non_member(self, db_session):
        with pytest.raises(AccessDenied):
            await list_tags(db_session, TEST_USER_MEMBER, TEST_ORG_PAID)


# ═══════════════════════════════════════════════
# Bulk actions
# ═══════════════════════════════════════════════

class TestBulkTag:
    @pytest.mark.asyncio
    async def test_assigns_once(self, db_session):
        leads = await _seed(db_session)
        tag = await create_tag(db_session, TEST_USER_OWNER, TagCreate(organization_id=TEST_ORG_PAID, name="Hot"))
        ids = [l.id for l in leads]

        first = await run_bulk_action(db_session, TEST_USER_OWNER, _request("tag", ids, tagIds=[tag["id"]]))
        assert first["message"] == "Bulk tag completed successfully"
        assert first["bulkAction"]["results"]["total_assignments"] == 3

        second = await run_bulk_action(db_session, TEST_USER_OWNER, _request("tag", ids, tagIds=[tag["id"]]))
        assert second["bulkAction"]["results"]["total_assignments"] == 0
        assert await _count(db_session, LeadTagAssignment) == 3

        tags = await list_tags(db_session, TEST_USER_OWNER, TEST_ORG_PAID)
        assert tags[0]["usage_count"] == 3

    @pytest.mark.asyncio
    async def test_no_tags_recorded_as_failed(self, db_session):
        leads = await _seed(db_session)
        result = await run_bulk_action(db_session, TEST_USER_OWNER, _request("tag", [leads[0].id]))
        assert result["message"] == "Bulk tag failed"
        assert result["bulkAction"]["status"] == "failed"
        assert result["bulkAction"]["results"] == {"error": "No tags specified"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("tag_ids", [["not-a-uuid"], "a-single-string", [42]])
    async def test_malformed_tag_ids_recorded_as_failed(self, db_session, tag_ids):
        leads = await _seed(db_session)
        result = await run_bulk_action(
            db_session, TEST_USER_OWNER, _request("tag", [leads[0].id], tagIds=tag_ids)
        )
        assert result["bulkAction"]["status"] == "failed"
        assert result["bulkAction"]["results"] == {"error": "Unknown tag for this organization"}
        assert await _count(db_session, LeadTagAssignment) == 0


class TestBulkExport:
    @pytest.mark.asyncio
    async def test_csv(self, db_session):
        leads = await _seed(db_session)
        result = await run_bulk_action(db_session, TEST_USER_OWNER, _request("export", [leads[0].id]))
        data = result["bulkAction"]["results"]
        assert data["format"] == "csv"
        assert data["exported_leads"] == 1
        assert data["export_data"].startswith("Business Name,Email")

    @pytest.mark.asyncio
    async def test_json(self, db_session):
        leads = await _seed(db_session)
        result = await run_bulk_action(
            db_session, TEST_USER_OWNER, _request("export", [l.id for l in leads], format="json")
        )
        exported = json.loads(result["bulkAction"]["results"]["export_data"])
        assert {e["business_name"] for e in exported} == {"Golden Crust", "X", "No Contact Co"}

    @pytest.mark.asyncio
    async def test_excel_base64(self, db_session):
        leads = await _seed(db_session)
        result = await run_bulk_action(
            db_session, TEST_USER_OWNER, _request("export", [leads[0].id], format="excel")
        )
        blob = base64.b64decode(result["bulkAction"]["results"]["export_data"])
        assert blob[:2] == b"PK"

    @pytest.mark.asyncio
    async def test_unknown_format(self, db_session):
        leads = await _seed(db_session)
        result = await run_bulk_action(
            db_session, TEST_USER_OWNER, _request("export", [leads[0].id], format="pdf")
        )
        assert result["bulkAction"]["status"] == "failed"


class TestBulkDelete:
    @pytest.mark.asyncio
    async def test_deletes_with_metadata(self, db_session):
        leads = await _seed(db_session)
        db_session.add(LeadMetadata(lead_id=leads[0].id, user_id=TEST_USER_OWNER, is_favorited=True))
        await db_session.commit()

        result = await run_bulk_action(db_session, TEST_USER_OWNER, _request("delete", [leads[0].id]))
        assert result["bulkAction"]["results"] == {"deleted_leads": 1}
        assert await _count(db_session, Lead) == 2
        assert await _count(db_session, LeadMetadata) == 0

    @pytest.mark.asyncio
    async def test_other_org_leads_untouched(self, db_session):
        leads = await _seed(db_session)
        request = BulkActionRequest(
            organization_id=TEST_ORG_TRIAL,
            action_type="delete",
            lead_ids=[leads[0].id],
        )
        result = await run_bulk_action(db_session, TEST_USER_OWNER, request)
        assert result["bulkAction"]["results"] == {"deleted_leads": 0}
        assert await _count(db_session, Lead) == 3


class TestBulkScoreAndVerify:
    @pytest.mark.asyncio
    async def test_update_score(self, db_session):
        leads = await _seed(db_session)
        result = await run_bulk_action(
            db_session, TEST_USER_OWNER, _request("update_score", [leads[0].id, leads[2].id])
        )
        scores = {u["lead_id"]: u["new_score"] for u in result["bulkAction"]["results"]["score_updates"]}
        assert scores == {leads[0].id: 100, leads[2].id: 60}

    @pytest.mark.asyncio
    async def test_verify(self, db_session):
        leads = await _seed(db_session)
        result = await run_bulk_action(
            db_session, TEST_USER_OWNER, _request("verify", [l.id for l in leads])
        )
        data = result["bulkAction"]["results"]
        assert data["verified_leads"] == 1
        assert data["invalid_leads"] == 2

        rows = (await db_session.execute(
            select(Lead.business_name, Lead.verification_status)
        )).all()
        assert dict(rows) == {"Golden Crust": "verified", "X": "invalid", "No Contact Co": "invalid"}

    def test_validate_lead_data(self):
        assert validate_lead_data(Lead(business_name="Acme", website="https://acme.com"))
        assert not validate_lead_data(Lead(business_name="A", email="a@acme.com"))
        assert not validate_lead_data(Lead(business_name="Acme"))


class TestListBulkActions:
    @pytest.mark.asyncio
    async def test_history_and_status_filter(self, db_session):
        leads = await _seed(db_session)
        await run_bulk_action(db_session, TEST_USER_OWNER, _request("verify", [leads[0].id]))
        await run_bulk_action(db_session, TEST_USER_OWNER, _request("tag", [leads[0].id]))

        assert len(await list_bulk_actions(db_session, TEST_USER_OWNER, TEST_ORG_PAID)) == 2
        failed = await list_bulk_actions(db_session, TEST_USER_OWNER, TEST_ORG_PAID, status="failed")
        assert [a["action_type"] for a in failed] == ["tag"]
        assert await _count(db_session, BulkAction) == 2
