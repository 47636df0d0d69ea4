"""
ShiprocketTracking model

One row per waybill (AWB), fed by Shiprocket push callbacks and on-demand
pulls. Used to show live tracking on the storefront and in admin.
"""
from datetime import datetime, timezone
from sqlalchemy import (
    Column, Integer, BigInteger, String, Boolean, DateTime, Text, JSON, Index
)

from shiprocket_fulfillment.core.database import Base


class ShiprocketTracking(Base):
    """
    Canonical tracking record for a Shiprocket waybill.

    Created on first sighting of an AWB and only updated afterwards.
    Status fields always hold display labels, never bare status codes.
    """
    __tablename__ = "shiprocket_tracking"
    __table_args__ = (
        Index("ix_shiprocket_tracking_awb", "awb", unique=True),
        Index("ix_shiprocket_tracking_host_order_id", "host_order_id"),
    )

    id = Column(Integer, primary_key=True, index=True)

    # Shiprocket identifiers
    awb = Column(String(64), nullable=False)
    order_id = Column(String(100), nullable=True)  # channel order id, "<host id>-<timestamp>"
    sr_order_id = Column(BigInteger, nullable=True)  # Shiprocket internal order id
    channel_id = Column(BigInteger, nullable=True)

    # Link to host storefront
    host_order_id = Column(String(100), nullable=True)
    host_fulfillment_id = Column(String(100), nullable=True)

    # Courier info
    courier_name = Column(String(100), nullable=True)

    # Status
    current_status = Column(String(100), nullable=False, default="Unknown")
    current_status_id = Column(Integer, nullable=True)
    shipment_status = Column(String(100), nullable=True)
    shipment_status_id = Column(Integer, nullable=True)

    # Timestamps from Shiprocket
    current_timestamp = Column(DateTime(timezone=True), nullable=True)
    etd = Column(DateTime(timezone=True), nullable=True)  # Estimated time of delivery
    awb_assigned_date = Column(DateTime(timezone=True), nullable=True)
    pickup_scheduled_date = Column(DateTime(timezone=True), nullable=True)

    # Scan history: [{date, status, activity, location, ...}]
    scans = Column(JSON, nullable=True)

    # Proof of delivery
    pod_status = Column(String(100), nullable=True)
    pod = Column(Text, nullable=True)
    is_return = Column(Boolean, nullable=True)

    # Shipment details
    origin = Column(String(255), nullable=True)
    destination = Column(String(255), nullable=True)
    weight = Column(String(50), nullable=True)

    # Last payload received, for debugging
    raw_payload = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def __repr__(self):
        return f"<ShiprocketTracking(awb={self.awb}, status={self.current_status})>"
