"""
Shiprocket tracking reconciliation

Keeps exactly one ShiprocketTracking row per waybill, fed by:
- push: Shiprocket webhook callbacks
- pull: on-demand /courier/track/awb calls (admin sync)

Both paths normalize numeric status codes to labels before storage and
merge through upsert_tracking(), where fields that are absent (None) in an
update never erase stored values.

Known limitation: there is no per-field timestamp comparison, so a stale
update applied after a fresher one overwrites the fields both carry.
"""
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from shiprocket_fulfillment.core.exceptions import (
    ShiprocketInvalidDataError,
    ShiprocketMisconfiguredError,
    ShiprocketNotFoundError,
)
from shiprocket_fulfillment.models.tracking import ShiprocketTracking
from shiprocket_fulfillment.services.host import EventBus, HostOrderNotFound, OrderStore
from shiprocket_fulfillment.services.shipment_service import ShipmentDocuments, ShipmentService
from shiprocket_fulfillment.services.shiprocket_client import ShiprocketClientManager

logger = logging.getLogger(__name__)

TRACKING_UPDATED_EVENT = "shiprocket.tracking.updated"
DEFAULT_CARRIER_TIMEZONE = "Asia/Kolkata"
UNKNOWN_STATUS = "Unknown"

# Shiprocket status codes seen in status fields
SHIPROCKET_STATUS_LABELS: Dict[int, str] = {
    1: "AWB Assigned",
    6: "Shipped",
    7: "Delivered",
    8: "Cancelled",
    9: "RTO Initiated",
    13: "Pickup Error",
    17: "In Transit",
    18: "In Transit",
    19: "RTO In Transit",
    20: "RTO In Transit",
    21: "Reached Destination",
}

CHANNEL_ORDER_ID = re.compile(r"^(?P<host_order_id>.+)-(?P<timestamp>\d+)$")
DAY_FIRST_DATETIME = re.compile(
    r"^(?P<day>\d{2}) (?P<month>\d{2}) (?P<year>\d{4})"
    r"(?: (?P<hour>\d{2}):(?P<minute>\d{2})(?::(?P<second>\d{2}))?)?$"
)
DATETIME_FORMATS = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%Y-%m-%d",
    "%d-%m-%Y %H:%M:%S",
    "%d-%m-%Y %H:%M",
    "%d %b %Y %H:%M:%S",
    "%d %b, %Y",
)

UPSERTABLE_FIELDS = frozenset(
    column.name
    for column in ShiprocketTracking.__table__.columns
    if column.name not in ("id", "awb", "created_at", "updated_at")
)


# ==================== Parsing helpers ====================


def normalize_status(value: Any) -> Optional[str]:
    """
    Map a numeric status code to its label.

    Labels pass through; unknown codes become their string form.
    """
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return str(value)
    if isinstance(value, int):
        return SHIPROCKET_STATUS_LABELS.get(value, str(value))
    text = str(value).strip()
    if text.isdigit():
        return SHIPROCKET_STATUS_LABELS.get(int(text), text)
    return text


def parse_carrier_datetime(value: Any, tz: Optional[ZoneInfo] = None) -> Optional[datetime]:
    """
    Parse Shiprocket timestamps into aware datetimes.

    Accepts "DD MM YYYY HH:mm:ss" and ISO-like "YYYY-MM-DD HH:mm:ss" (plus a
    few variants seen in etd fields). Naive values are carrier local time.
    Unparsable input returns None.
    """
    tz = tz or ZoneInfo(DEFAULT_CARRIER_TIMEZONE)
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=tz)

    text = str(value).strip()
    match = DAY_FIRST_DATETIME.match(text)
    if match:
        parts = match.groupdict()
        try:
            return datetime(
                int(parts["year"]),
                int(parts["month"]),
                int(parts["day"]),
                int(parts["hour"] or 0),
                int(parts["minute"] or 0),
                int(parts["second"] or 0),
                tzinfo=tz,
            )
        except ValueError:
            return None

    for fmt in DATETIME_FORMATS:
        try:
            return datetime.strptime(text, fmt).replace(tzinfo=tz)
        except ValueError:
            continue

    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        logger.debug(f"[TRACKING] Unparsable carrier timestamp: {text!r}")
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=tz)


def host_order_id_from_channel_order_id(channel_order_id: Optional[str]) -> Optional[str]:
    """
    Recover the host order id from "<host id>-<digits>".

    Ids without a numeric suffix are returned unchanged.
    """
    if not channel_order_id:
        return None
    match = CHANNEL_ORDER_ID.match(str(channel_order_id))
    return match.group("host_order_id") if match else str(channel_order_id)


def _to_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _to_bool(value: Any) -> Optional[bool]:
    if value is None or value == "":
        return None
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes")
    return bool(value)


def _to_text(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


@dataclass
class TrackingSyncResult:
    record: ShiprocketTracking
    documents: Optional[ShipmentDocuments] = None


class TrackingService:
    """Tracking record reads, upserts and both reconciliation paths."""

    def __init__(
        self,
        db: AsyncSession,
        client: Optional[ShiprocketClientManager] = None,
        event_bus: Optional[EventBus] = None,
        order_store: Optional[OrderStore] = None,
        carrier_timezone: str = DEFAULT_CARRIER_TIMEZONE,
    ):
        self.db = db
        self.client = client
        self.event_bus = event_bus
        self.order_store = order_store
        self.tz = ZoneInfo(carrier_timezone)

    # ==================== Storage ====================

    async def get_by_awb(self, awb: str) -> Optional[ShiprocketTracking]:
        result = await self.db.execute(
            select(ShiprocketTracking).where(ShiprocketTracking.awb == awb)
        )
        return result.scalar_one_or_none()

    async def upsert_tracking(self, awb: str, fields: Dict[str, Any]) -> ShiprocketTracking:
        """
        Create the record for awb or merge fields into it.

        None values are skipped so partial updates keep earlier data.
        """
        if not awb:
            raise ShiprocketInvalidDataError("Missing required field: awb", field="awb")

        unknown = set(fields) - UPSERTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown tracking fields: {sorted(unknown)}")

        updates = {key: value for key, value in fields.items() if value is not None}
        record = await self.get_by_awb(awb)

        if record is None:
            record = ShiprocketTracking(awb=awb, **updates)
            if record.current_status is None:
                record.current_status = UNKNOWN_STATUS
            self.db.add(record)
            try:
                await self.db.flush()
                logger.info(f"[TRACKING] Created tracking record for AWB {awb}")
                return record
            except IntegrityError:
                # Lost an insert race on the unique awb index; merge into the winner
                await self.db.rollback()
                record = await self.get_by_awb(awb)
                if record is None:
                    raise

        for key, value in updates.items():
            setattr(record, key, value)
        await self.db.flush()
        logger.debug(f"[TRACKING] Updated AWB {awb}: {sorted(updates)}")
        return record

    # ==================== Push path ====================

    async def process_webhook(self, payload: Dict[str, Any]) -> ShiprocketTracking:
        """
        Upsert from a Shiprocket webhook body and emit the update event.

        The caller has already verified the shared secret. The record is
        committed before the event goes out, so subscribers only see stored updates.
        """
        awb = _to_text(payload.get("awb"))
        if not awb:
            raise ShiprocketInvalidDataError("Invalid payload - missing AWB", field="awb")

        logger.info(
            f"[WEBHOOK] Update for AWB {awb} - "
            f"Status: {payload.get('current_status')} ({payload.get('shipment_status_id')})"
        )

        channel_order_id = _to_text(payload.get("order_id"))
        fields = {
            "order_id": channel_order_id,
            "host_order_id": await self._resolve_host_order_id(channel_order_id),
            "sr_order_id": _to_int(payload.get("sr_order_id")),
            "courier_name": _to_text(payload.get("courier_name")),
            "current_status": normalize_status(payload.get("current_status")),
            "current_status_id": _to_int(payload.get("current_status_id")),
            "shipment_status": normalize_status(payload.get("shipment_status")),
            "shipment_status_id": _to_int(payload.get("shipment_status_id")),
            "current_timestamp": parse_carrier_datetime(payload.get("current_timestamp"), self.tz),
            "etd": parse_carrier_datetime(payload.get("etd"), self.tz),
            "awb_assigned_date": parse_carrier_datetime(payload.get("awb_assigned_date"), self.tz),
            "pickup_scheduled_date": parse_carrier_datetime(payload.get("pickup_scheduled_date"), self.tz),
            "scans": payload.get("scans") or None,
            "pod_status": _to_text(payload.get("pod_status")),
            "pod": _to_text(payload.get("pod")),
            "is_return": _to_bool(payload.get("is_return")),
            "channel_id": _to_int(payload.get("channel_id")),
            "raw_payload": payload,
        }

        record = await self.upsert_tracking(awb, fields)
        await self.db.commit()
        await self._emit_tracking_updated(record)
        return record

    async def _resolve_host_order_id(self, channel_order_id: Optional[str]) -> Optional[str]:
        candidate = host_order_id_from_channel_order_id(channel_order_id)
        if not candidate or self.order_store is None:
            return candidate

        try:
            await self.order_store.get_order_owner(candidate)
        except HostOrderNotFound:
            logger.info(f"[TRACKING] Order {candidate} not found in store, record left unlinked")
            return None
        except Exception as e:
            # Keep the link so ownership checks still guard the record
            logger.warning(f"[TRACKING] Could not verify order {candidate}: {e}")
        return candidate

    async def _emit_tracking_updated(self, record: ShiprocketTracking) -> None:
        if self.event_bus is None:
            logger.debug("[TRACKING] No event bus configured, skipping event emission")
            return
        try:
            await self.event_bus.emit(TRACKING_UPDATED_EVENT, {
                "awb": record.awb,
                "tracking_id": record.id,
                "current_status": record.current_status,
                "shipment_status_id": record.shipment_status_id,
            })
        except Exception as e:
            logger.warning(f"[TRACKING] Failed to emit {TRACKING_UPDATED_EVENT} for AWB {record.awb}: {e}")

    # ==================== Pull path ====================

    async def sync_from_carrier(
        self,
        awb: str,
        fulfillment_id: Optional[str] = None,
    ) -> TrackingSyncResult:
        """
        Pull the current snapshot for awb and merge it.

        With fulfillment_id, documents are regenerated and written back to
        the fulfillment; failures there are logged and do not fail the sync.
        """
        if self.client is None:
            raise ShiprocketMisconfiguredError("Shiprocket client is not configured")

        response = await self.client.get_tracking(awb)
        data = response.get("tracking_data") if isinstance(response, dict) else None
        if not data:
            raise ShiprocketNotFoundError(f"No tracking data found from Shiprocket for AWB {awb}")

        track = (data.get("shipment_track") or [{}])[0] or {}
        status = (
            data.get("current_status")
            or track.get("current_status")
            or data.get("shipment_status")
            or UNKNOWN_STATUS
        )

        fields = {
            "courier_name": _to_text(track.get("courier_name") or data.get("courier_name")),
            "current_status": normalize_status(status),
            "current_status_id": _to_int(data.get("current_status_id")),
            "shipment_status": normalize_status(data.get("shipment_status")),
            "shipment_status_id": _to_int(data.get("shipment_status_id") or data.get("shipment_status")),
            "current_timestamp": parse_carrier_datetime(data.get("current_timestamp"), self.tz),
            "etd": parse_carrier_datetime(data.get("etd") or track.get("edd"), self.tz),
            "awb_assigned_date": parse_carrier_datetime(data.get("awb_assigned_date"), self.tz),
            "pickup_scheduled_date": parse_carrier_datetime(data.get("pickup_scheduled_date"), self.tz),
            "scans": data.get("shipment_track_activities") or data.get("scans") or None,
            "pod_status": _to_text(data.get("pod_status") or track.get("pod_status")),
            "pod": _to_text(data.get("pod") or track.get("pod")),
            "is_return": _to_bool(data.get("is_return")),
            "origin": _to_text(track.get("origin")),
            "destination": _to_text(track.get("destination")),
            "weight": _to_text(track.get("weight")),
            "host_fulfillment_id": fulfillment_id,
            "raw_payload": response,
        }

        record = await self.upsert_tracking(awb, fields)
        logger.info(f"[TRACKING] Synced AWB {awb}: {record.current_status}")

        documents = None
        if fulfillment_id:
            documents = await self._refresh_documents(fulfillment_id)
        return TrackingSyncResult(record=record, documents=documents)

    async def _refresh_documents(self, fulfillment_id: str) -> Optional[ShipmentDocuments]:
        if self.order_store is None:
            logger.warning("[TRACKING] No order store configured, cannot refresh documents")
            return None

        try:
            data = await self.order_store.get_fulfillment_data(fulfillment_id) or {}
            shipment_id = data.get("shipment_id")
            if not shipment_id:
                logger.warning(f"[TRACKING] Fulfillment {fulfillment_id} has no shipment_id, skipping documents")
                return None

            order_id = data.get("sr_order_id") or data.get("order_id")
            documents = await ShipmentService(self.client).generate_documents(shipment_id, order_id)
            await self.order_store.update_fulfillment_data(fulfillment_id, {**data, **documents.to_dict()})
            logger.info(f"[TRACKING] Documents refreshed for fulfillment {fulfillment_id}")
            return documents
        except Exception as e:
            logger.error(f"[TRACKING] Failed to refresh documents for fulfillment {fulfillment_id}: {e}")
            return None

    # ==================== Queries ====================

    async def get_for_customer(self, awb: str, actor_id: Optional[str]) -> ShiprocketTracking:
        """
        Tracking visible to actor_id.

        Records linked to another customer's order, and records whose
        ownership cannot be verified, are reported exactly like missing ones.
        """
        record = await self.get_by_awb(awb)
        if record is None:
            raise ShiprocketNotFoundError("Tracking not found")

        if record.host_order_id and not await self._may_view(record, actor_id):
            raise ShiprocketNotFoundError("Tracking not found")
        return record

    async def _may_view(self, record: ShiprocketTracking, actor_id: Optional[str]) -> bool:
        if self.order_store is None:
            logger.warning(f"[TRACKING] No order store, denying access to linked AWB {record.awb}")
            return False

        try:
            owner = await self.order_store.get_order_owner(record.host_order_id)
        except HostOrderNotFound:
            return True
        except Exception as e:
            logger.warning(f"[TRACKING] Ownership check failed for AWB {record.awb}: {e}")
            return False

        return owner is None or owner == actor_id
