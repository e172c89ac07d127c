"""Tests for the in-memory and Supabase store implementations."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import patch

import httpx
import pytest

from src.errors import StoreError
from src.models import ReminderStatus
from src.services.store import (
    InMemoryStore,
    SupabaseStore,
    build_postgrest_params,
    split_filter_key,
)

T0 = datetime(2025, 3, 9, 12, 0, tzinfo=UTC)


@pytest.fixture
def rows():
    return InMemoryStore(
        {
            "reminders": [
                {"id": "r1", "status": "pending", "scheduled_at": T0 - timedelta(hours=1), "error": None},
                {"id": "r2", "status": "pending", "scheduled_at": T0 + timedelta(hours=1), "error": "x"},
                {"id": "r3", "status": "sent", "scheduled_at": T0 - timedelta(hours=2), "error": None},
            ]
        }
    )


class TestSplitFilterKey:
    def test_plain_column_means_equality(self):
        assert split_filter_key("status") == ("status", "eq")

    def test_operator_suffix(self):
        assert split_filter_key("scheduled_at__lte") == ("scheduled_at", "lte")

    def test_unknown_operator(self):
        with pytest.raises(ValueError):
            split_filter_key("name__like")


class TestInMemoryStore:
    def test_equality_and_enum_values(self, rows):
        result = rows.select("reminders", filters={"status": ReminderStatus.PENDING})
        assert {r["id"] for r in result} == {"r1", "r2"}

    def test_ordering_predicate(self, rows):
        result = rows.select("reminders", filters={"status": "pending", "scheduled_at__lte": T0})
        assert [r["id"] for r in result] == ["r1"]

    def test_iso_string_compares_with_datetime(self, rows):
        result = rows.select("reminders", filters={"scheduled_at__lt": T0.isoformat()})
        assert {r["id"] for r in result} == {"r1", "r3"}

    def test_null_semantics(self, rows):
        assert {r["id"] for r in rows.select("reminders", filters={"error": None})} == {"r1", "r3"}
        assert [r["id"] for r in rows.select("reminders", filters={"error__ne": None})] == ["r2"]

    def test_order_and_limit(self, rows):
        result = rows.select("reminders", order_by="scheduled_at", descending=True, limit=2)
        assert [r["id"] for r in result] == ["r2", "r1"]

    def test_insert_assigns_id_and_created_at(self):
        store = InMemoryStore()
        row = store.insert("leads", {"name": "Sam"})
        assert row["id"]
        assert row["created_at"] is not None

    def test_update_returns_changed_rows(self, rows):
        updated = rows.update("reminders", {"status": ReminderStatus.CANCELLED}, filters={"status": "pending"})
        assert {r["id"] for r in updated} == {"r1", "r2"}
        assert all(r["status"] == "cancelled" for r in updated)
        assert rows.select("reminders", filters={"status": "pending"}) == []

    def test_update_with_no_match_returns_empty(self, rows):
        assert rows.update("reminders", {"status": "sent"}, filters={"id": "missing"}) == []

    def test_returned_rows_are_copies(self, rows):
        rows.select("reminders")[0]["status"] = "mutated"
        assert rows.select_one("reminders", filters={"id": "r1"})["status"] == "pending"

    def test_unknown_table_is_empty(self):
        assert InMemoryStore().select("nothing") == []


class TestBuildPostgrestParams:
    def test_translates_filters(self):
        params = build_postgrest_params(
            {
                "status": ReminderStatus.PENDING,
                "scheduled_at__lte": T0,
                "sentiment__ne": None,
                "error": None,
                "is_active": True,
            },
            order_by="scheduled_at",
            limit=50,
        )
        assert params == {
            "status": "eq.pending",
            "scheduled_at": "lte.2025-03-09T12:00:00+00:00",
            "sentiment": "not.is.null",
            "error": "is.null",
            "is_active": "eq.true",
            "order": "scheduled_at.asc",
            "limit": "50",
        }

    def test_descending_order(self):
        assert build_postgrest_params(None, order_by="created_at", descending=True) == {
            "order": "created_at.desc",
        }


class TestSupabaseStore:
    @pytest.fixture
    def supabase(self):
        return SupabaseStore("https://project.supabase.co/", "service-key")

    def test_select_sends_postgrest_query(self, supabase, mock_response):
        with patch.object(supabase._client, "request", return_value=mock_response([{"id": "l1"}])) as req:
            result = supabase.select("leads", filters={"phone": "+15551234567"}, limit=1)

        assert result == [{"id": "l1"}]
        method, path = req.call_args[0]
        assert (method, path) == ("GET", "/leads")
        assert req.call_args[1]["params"] == {"phone": "eq.+15551234567", "limit": "1", "select": "*"}

    def test_insert_asks_for_representation(self, supabase, mock_response):
        with patch.object(supabase._client, "request", return_value=mock_response([{"id": "new"}])) as req:
            row = supabase.insert("leads", {"name": "Sam", "created": T0})

        assert row == {"id": "new"}
        assert req.call_args[1]["headers"] == {"Prefer": "return=representation"}
        assert req.call_args[1]["json"] == [{"name": "Sam", "created": "2025-03-09T12:00:00Z"}]

    def test_http_error_status_raises(self, supabase, mock_response):
        with patch.object(supabase._client, "request", return_value=mock_response({"message": "bad"}, 400)):
            with pytest.raises(StoreError) as excinfo:
                supabase.select("leads")
        assert excinfo.value.status_code == 400

    def test_transport_error_raises(self, supabase):
        with patch.object(supabase._client, "request", side_effect=httpx.ConnectError("refused")):
            with pytest.raises(StoreError):
                supabase.select("leads")

    def test_update_requires_filters(self, supabase):
        with pytest.raises(ValueError):
            supabase.update("leads", {"status": "lost"}, filters={})
