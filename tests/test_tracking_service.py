"""
Tests for tracking reconciliation (webhook push, carrier pull, customer reads).
"""
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import IntegrityError

from conftest import json_response, request_json
from shiprocket_fulfillment.core.exceptions import (
    ShiprocketInvalidDataError,
    ShiprocketMisconfiguredError,
    ShiprocketNotFoundError,
)
from shiprocket_fulfillment.models.tracking import ShiprocketTracking
from shiprocket_fulfillment.services.host import HostOrderNotFound
from shiprocket_fulfillment.services.tracking_service import (
    TRACKING_UPDATED_EVENT,
    TrackingService,
    host_order_id_from_channel_order_id,
    normalize_status,
    parse_carrier_datetime,
)


def result_of(record):
    result = MagicMock()
    result.scalar_one_or_none.return_value = record
    return result


@pytest.fixture
def db(mock_db):
    """Mock session that returns the most recently added record."""
    rows = []

    async def execute(statement):
        return result_of(rows[-1] if rows else None)

    mock_db.add = MagicMock(side_effect=rows.append)
    mock_db.execute = AsyncMock(side_effect=execute)
    mock_db.rows = rows
    return mock_db


@pytest.fixture
def event_bus():
    bus = AsyncMock()
    bus.emit = AsyncMock()
    return bus


@pytest.fixture
def tracking_service(db, event_bus, mock_order_store):
    return TrackingService(db, event_bus=event_bus, order_store=mock_order_store)


def webhook_payload(**overrides):
    payload = {
        "awb": "AWB123",
        "courier_name": "Delhivery",
        "current_status": "IN TRANSIT",
        "current_status_id": 18,
        "shipment_status": "IN TRANSIT",
        "shipment_status_id": 18,
        "current_timestamp": "05 01 2026 14:30:00",
        "order_id": "order_01-1700000000",
        "sr_order_id": 9001,
        "awb_assigned_date": "2026-01-05 11:50:00",
        "etd": "2026-01-08 18:00:00",
        "scans": [{"date": "2026-01-05 14:30:00", "activity": "Picked up", "location": "Bengaluru"}],
        "is_return": 0,
        "channel_id": 12345,
    }
    payload.update(overrides)
    return payload


class TestParsingHelpers:
    """Test status, timestamp and order id normalization."""

    @pytest.mark.parametrize("value,expected", [
        (7, "Delivered"),
        ("7", "Delivered"),
        (18, "In Transit"),
        (99, "99"),
        ("OUT FOR DELIVERY", "OUT FOR DELIVERY"),
        (None, None),
        ("", None),
    ])
    def test_normalize_status(self, value, expected):
        assert normalize_status(value) == expected

    def test_day_first_and_iso_are_same_instant(self):
        day_first = parse_carrier_datetime("05 01 2026 14:30:00")
        iso = parse_carrier_datetime("2026-01-05 14:30:00")

        assert day_first == iso
        assert day_first.astimezone(timezone.utc) == datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)

    def test_explicit_offset_kept(self):
        parsed = parse_carrier_datetime("2026-01-05T09:00:00Z")

        assert parsed == datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)

    def test_unparsable_timestamp(self):
        assert parse_carrier_datetime("soon") is None
        assert parse_carrier_datetime("31 02 2026 10:00:00") is None
        assert parse_carrier_datetime("") is None

    @pytest.mark.parametrize("value,expected", [
        ("order_01-1700000000", "order_01"),
        ("order_01JABC-DEF-1700000000", "order_01JABC-DEF"),
        ("order_01", "order_01"),
        (None, None),
    ])
    def test_host_order_id(self, value, expected):
        assert host_order_id_from_channel_order_id(value) == expected


class TestUpsert:
    """Test the single merge point for tracking records."""

    @pytest.mark.asyncio
    async def test_creates_with_unknown_status(self, tracking_service, db):
        record = await tracking_service.upsert_tracking("AWB1", {"courier_name": "Delhivery"})

        assert record.awb == "AWB1"
        assert record.current_status == "Unknown"
        assert db.rows == [record]

    @pytest.mark.asyncio
    async def test_absent_fields_keep_stored_values(self, tracking_service, db):
        await tracking_service.upsert_tracking("AWB1", {"scans": [{"activity": "A"}], "courier_name": "Delhivery"})
        record = await tracking_service.upsert_tracking(
            "AWB1", {"scans": None, "current_status": "Delivered", "courier_name": None}
        )

        assert record.scans == [{"activity": "A"}]
        assert record.courier_name == "Delhivery"
        assert record.current_status == "Delivered"
        assert len(db.rows) == 1

    @pytest.mark.asyncio
    async def test_unknown_field_rejected(self, tracking_service):
        with pytest.raises(ValueError):
            await tracking_service.upsert_tracking("AWB1", {"colour": "blue"})

    @pytest.mark.asyncio
    async def test_missing_awb(self, tracking_service):
        with pytest.raises(ShiprocketInvalidDataError):
            await tracking_service.upsert_tracking("", {"current_status": "Shipped"})

    @pytest.mark.asyncio
    async def test_insert_race_merges_into_winner(self, mock_db):
        winner = ShiprocketTracking(awb="AWB1", current_status="Shipped", courier_name="Delhivery")
        mock_db.execute = AsyncMock(side_effect=[result_of(None), result_of(winner)])
        mock_db.flush = AsyncMock(side_effect=[IntegrityError("INSERT", {}, Exception("duplicate awb")), None])
        service = TrackingService(mock_db)

        record = await service.upsert_tracking("AWB1", {"current_status": "In Transit"})

        assert record is winner
        assert record.current_status == "In Transit"
        assert record.courier_name == "Delhivery"
        mock_db.rollback.assert_awaited_once()


class TestWebhookProcessing:
    """Test the push path."""

    @pytest.mark.asyncio
    async def test_creates_record_and_links_order(self, tracking_service, mock_order_store):
        record = await tracking_service.process_webhook(webhook_payload())

        assert record.awb == "AWB123"
        assert record.order_id == "order_01-1700000000"
        assert record.host_order_id == "order_01"
        assert record.sr_order_id == 9001
        assert record.current_status == "IN TRANSIT"
        assert record.shipment_status_id == 18
        assert record.is_return is False
        assert record.current_timestamp.astimezone(timezone.utc) == datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)
        mock_order_store.get_order_owner.assert_awaited_with("order_01")

    @pytest.mark.asyncio
    async def test_status_code_normalized(self, tracking_service):
        record = await tracking_service.process_webhook(
            webhook_payload(current_status=7, shipment_status="7", shipment_status_id=7)
        )

        assert record.current_status == "Delivered"
        assert record.shipment_status == "Delivered"

    @pytest.mark.asyncio
    async def test_partial_update_keeps_scans(self, tracking_service):
        await tracking_service.process_webhook(webhook_payload())
        record = await tracking_service.process_webhook({"awb": "AWB123", "current_status": "Delivered", "scans": []})

        assert record.current_status == "Delivered"
        assert record.scans == [{"date": "2026-01-05 14:30:00", "activity": "Picked up", "location": "Bengaluru"}]
        assert record.courier_name == "Delhivery"

    @pytest.mark.asyncio
    async def test_unknown_host_order_left_unlinked(self, tracking_service, mock_order_store):
        mock_order_store.get_order_owner.side_effect = HostOrderNotFound("order_01")

        record = await tracking_service.process_webhook(webhook_payload())

        assert record.host_order_id is None
        assert record.order_id == "order_01-1700000000"

    @pytest.mark.asyncio
    async def test_store_error_keeps_link(self, tracking_service, mock_order_store):
        mock_order_store.get_order_owner.side_effect = RuntimeError("store offline")

        record = await tracking_service.process_webhook(webhook_payload())

        assert record.host_order_id == "order_01"

    @pytest.mark.asyncio
    async def test_emits_tracking_updated(self, tracking_service, event_bus):
        await tracking_service.process_webhook(webhook_payload(shipment_status_id=7))

        event_bus.emit.assert_awaited_once()
        name, payload = event_bus.emit.await_args.args
        assert name == TRACKING_UPDATED_EVENT
        assert payload["awb"] == "AWB123"
        assert payload["shipment_status_id"] == 7

    @pytest.mark.asyncio
    async def test_event_emitted_after_commit(self, tracking_service, db, event_bus):
        calls = []
        db.commit.side_effect = lambda: calls.append("commit")
        event_bus.emit.side_effect = lambda name, payload: calls.append("emit")

        await tracking_service.process_webhook(webhook_payload())

        assert calls == ["commit", "emit"]

    @pytest.mark.asyncio
    async def test_failed_commit_emits_nothing(self, tracking_service, db, event_bus):
        db.commit.side_effect = RuntimeError("connection lost")

        with pytest.raises(RuntimeError):
            await tracking_service.process_webhook(webhook_payload())

        event_bus.emit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_emit_failure_does_not_fail_update(self, tracking_service, event_bus):
        event_bus.emit.side_effect = RuntimeError("bus down")

        record = await tracking_service.process_webhook(webhook_payload())

        assert record.awb == "AWB123"

    @pytest.mark.asyncio
    async def test_missing_awb(self, tracking_service, db):
        with pytest.raises(ShiprocketInvalidDataError) as exc_info:
            await tracking_service.process_webhook({"current_status": "Delivered"})

        assert exc_info.value.message == "Invalid payload - missing AWB"
        assert db.rows == []


class TestCarrierSync:
    """Test the pull path."""

    TRACKING = {
        "tracking_data": {
            "track_status": 1,
            "shipment_status": 7,
            "shipment_track": [{
                "courier_name": "Delhivery",
                "origin": "Bengaluru",
                "destination": "New Delhi",
                "weight": "0.8",
                "pod_status": "Delivered to customer",
            }],
            "shipment_track_activities": [
                {"date": "2026-01-08 10:00:00", "activity": "Delivered", "location": "New Delhi"},
            ],
            "etd": "2026-01-08 18:00:00",
        }
    }

    @pytest.fixture
    def manager(self, make_manager, fake_shiprocket):
        fake_shiprocket.routes["/courier/track/awb/AWB123"] = lambda request: json_response(200, self.TRACKING)
        return make_manager(fake_shiprocket)

    @pytest.mark.asyncio
    async def test_sync_normalizes_status(self, db, manager):
        service = TrackingService(db, client=manager)

        result = await service.sync_from_carrier("AWB123")

        record = result.record
        assert record.current_status == "Delivered"
        assert record.shipment_status_id == 7
        assert record.origin == "Bengaluru"
        assert record.destination == "New Delhi"
        assert record.current_timestamp is None
        assert record.scans[0]["activity"] == "Delivered"
        assert result.documents is None

    @pytest.mark.asyncio
    async def test_sync_refreshes_documents(self, db, manager, fake_shiprocket, mock_order_store):
        fake_shiprocket.routes["/courier/generate/label"] = lambda request: json_response(
            200, {"label_created": 1, "label_url": "https://cdn.test/label.pdf"}
        )
        mock_order_store.get_fulfillment_data.return_value = {"shipment_id": 7001, "sr_order_id": 9001}
        service = TrackingService(db, client=manager, order_store=mock_order_store)

        result = await service.sync_from_carrier("AWB123", fulfillment_id="ful_01")

        assert result.record.host_fulfillment_id == "ful_01"
        assert result.documents.label_url == "https://cdn.test/label.pdf"
        assert result.documents.invoice_url == ""
        assert request_json(fake_shiprocket.requests_to("/orders/print/invoice")[0]) == {"ids": [9001]}
        fulfillment_id, data = mock_order_store.update_fulfillment_data.await_args.args
        assert fulfillment_id == "ful_01"
        assert data["shipment_id"] == 7001
        assert data["label_url"] == "https://cdn.test/label.pdf"

    @pytest.mark.asyncio
    async def test_document_failure_does_not_fail_sync(self, db, manager, mock_order_store):
        mock_order_store.get_fulfillment_data.side_effect = RuntimeError("store offline")
        service = TrackingService(db, client=manager, order_store=mock_order_store)

        result = await service.sync_from_carrier("AWB123", fulfillment_id="ful_01")

        assert result.record.current_status == "Delivered"
        assert result.documents is None

    @pytest.mark.asyncio
    async def test_no_tracking_data(self, db, make_manager, fake_shiprocket):
        fake_shiprocket.routes["/courier/track/awb/AWB404"] = lambda request: json_response(
            200, {"tracking_data": {}}
        )
        service = TrackingService(db, client=make_manager(fake_shiprocket))

        with pytest.raises(ShiprocketNotFoundError):
            await service.sync_from_carrier("AWB404")

        assert db.rows == []

    @pytest.mark.asyncio
    async def test_requires_client(self, db):
        with pytest.raises(ShiprocketMisconfiguredError):
            await TrackingService(db).sync_from_carrier("AWB123")


class TestCustomerAccess:
    """Test ownership-gated reads."""

    @pytest.fixture
    def linked(self, db):
        record = ShiprocketTracking(awb="AWB123", current_status="Shipped", host_order_id="order_01")
        db.rows.append(record)
        return record

    @pytest.mark.asyncio
    async def test_owner_can_view(self, tracking_service, linked):
        assert await tracking_service.get_for_customer("AWB123", "cus_123") is linked

    @pytest.mark.asyncio
    async def test_other_customer_gets_not_found(self, tracking_service, linked):
        with pytest.raises(ShiprocketNotFoundError) as exc_info:
            await tracking_service.get_for_customer("AWB123", "cus_999")

        assert exc_info.value.message == "Tracking not found"

    @pytest.mark.asyncio
    async def test_anonymous_gets_not_found_for_owned_order(self, tracking_service, linked):
        with pytest.raises(ShiprocketNotFoundError):
            await tracking_service.get_for_customer("AWB123", None)

    @pytest.mark.asyncio
    async def test_store_error_denies(self, tracking_service, linked, mock_order_store):
        mock_order_store.get_order_owner.side_effect = RuntimeError("store offline")

        with pytest.raises(ShiprocketNotFoundError):
            await tracking_service.get_for_customer("AWB123", "cus_123")

    @pytest.mark.asyncio
    async def test_no_store_denies_linked_record(self, db, linked):
        with pytest.raises(ShiprocketNotFoundError):
            await TrackingService(db).get_for_customer("AWB123", "cus_123")

    @pytest.mark.asyncio
    async def test_guest_order_visible(self, tracking_service, linked, mock_order_store):
        mock_order_store.get_order_owner.return_value = None

        assert await tracking_service.get_for_customer("AWB123", None) is linked

    @pytest.mark.asyncio
    async def test_unlinked_record_visible(self, db):
        record = ShiprocketTracking(awb="AWB555", current_status="Shipped")
        db.rows.append(record)

        assert await TrackingService(db).get_for_customer("AWB555", None) is record

    @pytest.mark.asyncio
    async def test_missing_record(self, tracking_service):
        with pytest.raises(ShiprocketNotFoundError):
            await tracking_service.get_for_customer("NOPE", "cus_123")
