"""
Shiprocket Schemas

Pydantic models for the delivery-estimate, tracking, webhook and admin
sync endpoints.
"""
from datetime import datetime
from typing import Optional, List, Dict, Any, Union
from pydantic import BaseModel, Field, field_validator


# ==================== Delivery Estimate ====================


class DeliveryEstimateResponse(BaseModel):
    """Serviceability and price for a postcode pair."""
    serviceable: bool
    preference: str = Field(..., description="fastest or cheapest")
    courier_name: Optional[str] = None
    courier_company_id: Optional[int] = None
    etd: Optional[str] = None
    estimated_delivery_days: Optional[str] = None
    rate: Optional[float] = None
    is_surface: Optional[bool] = None
    courier_count: int = 0


# ==================== Tracking ====================


class TrackingPublic(BaseModel):
    """Storefront view of a tracking record."""
    awb: str
    courier_name: Optional[str] = None
    current_status: str
    current_status_id: Optional[int] = None
    shipment_status: Optional[str] = None
    shipment_status_id: Optional[int] = None
    current_timestamp: Optional[datetime] = None
    etd: Optional[datetime] = None
    is_return: Optional[bool] = None
    pod_status: Optional[str] = None
    scans: List[Dict[str, Any]] = Field(default_factory=list)
    updated_at: Optional[datetime] = None

    @field_validator("scans", mode="before")
    @classmethod
    def default_scans(cls, v):
        return v or []

    class Config:
        from_attributes = True


class TrackingAdmin(TrackingPublic):
    """Full record, including identifiers and the last raw payload."""
    id: int
    order_id: Optional[str] = None
    sr_order_id: Optional[int] = None
    channel_id: Optional[int] = None
    host_order_id: Optional[str] = None
    host_fulfillment_id: Optional[str] = None
    awb_assigned_date: Optional[datetime] = None
    pickup_scheduled_date: Optional[datetime] = None
    pod: Optional[str] = None
    origin: Optional[str] = None
    destination: Optional[str] = None
    weight: Optional[str] = None
    raw_payload: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None


class TrackingPublicResponse(BaseModel):
    success: bool = True
    tracking: TrackingPublic


class TrackingAdminResponse(BaseModel):
    success: bool = True
    tracking: TrackingAdmin


# ==================== Webhook ====================


class ShiprocketWebhookPayload(BaseModel):
    """
    Shiprocket status callback.

    Shiprocket sends ids as numbers or strings depending on the account,
    so those fields accept both. Unknown keys are preserved in raw_payload.
    """
    awb: Optional[Union[str, int]] = None
    courier_name: Optional[str] = None
    current_status: Optional[Union[str, int]] = None
    current_status_id: Optional[Union[int, str]] = None
    shipment_status: Optional[Union[str, int]] = None
    shipment_status_id: Optional[Union[int, str]] = None
    current_timestamp: Optional[str] = None
    order_id: Optional[Union[str, int]] = None
    sr_order_id: Optional[Union[int, str]] = None
    awb_assigned_date: Optional[str] = None
    pickup_scheduled_date: Optional[str] = None
    etd: Optional[str] = None
    scans: Optional[List[Dict[str, Any]]] = None
    is_return: Optional[Union[int, bool, str]] = None
    channel_id: Optional[Union[int, str]] = None
    pod_status: Optional[str] = None
    pod: Optional[str] = None

    class Config:
        extra = "allow"


class WebhookAck(BaseModel):
    success: bool = True
    message: str = "Webhook processed"
    awb: str


# ==================== Admin Sync ====================


class TrackingSyncRequest(BaseModel):
    fulfillment_id: Optional[str] = Field(
        None, description="Regenerate label/invoice/manifest for this fulfillment"
    )


class DocumentLinks(BaseModel):
    label_url: str = ""
    invoice_url: str = ""
    manifest_url: str = ""


class TrackingSyncSummary(BaseModel):
    id: int
    awb: str
    current_status: str
    courier_name: Optional[str] = None
    etd: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class TrackingSyncResponse(BaseModel):
    success: bool = True
    message: str = "Tracking data synced successfully"
    tracking: TrackingSyncSummary
    documents: Optional[DocumentLinks] = None


class ErrorResponse(BaseModel):
    success: bool = False
    error: str
    code: Optional[str] = None
