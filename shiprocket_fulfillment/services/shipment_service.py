"""
Shipment creation pipeline for Shiprocket

Turns a host fulfillment plus its order into a Shiprocket shipment:
1. Resolve every fulfillment item to its order line and variant measurements
2. Aggregate weight (kg) and package dimensions (cm)
3. Build the adhoc order payload with validated addresses
4. Create the remote order
5. Resolve the preferred courier (falls back to auto-assign)
6. Assign the waybill, cancelling the remote order if no courier accepts it
7. Generate label, invoice and manifest

Missing measurements are refused before any network call: Shiprocket bills
volumetric weight, so guessed dimensions cost real money.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Callable, Dict, Optional, Sequence

from shiprocket_fulfillment.core.exceptions import (
    ShiprocketError,
    ShiprocketInvalidDataError,
    ShiprocketNoCourierError,
    ShiprocketNotFoundError,
)
from shiprocket_fulfillment.services.host import (
    FulfillmentItem,
    HostOrder,
    OrderAddress,
    OrderLineItem,
)
from shiprocket_fulfillment.services.shiprocket_client import ShiprocketClientManager
from shiprocket_fulfillment.services.validation import (
    require_field,
    validate_phone,
    validate_pincode,
)

logger = logging.getLogger(__name__)

# API endpoints
CREATE_ORDER_PATH = "/orders/create/adhoc"
ASSIGN_AWB_PATH = "/courier/assign/awb"
CANCEL_ORDER_PATH = "/orders/cancel"
GENERATE_MANIFEST_PATH = "/manifests/generate"
GENERATE_LABEL_PATH = "/courier/generate/label"
PRINT_INVOICE_PATH = "/orders/print/invoice"

TRACKING_URL_TEMPLATE = "https://shiprocket.co/tracking/{awb}"
ORDER_DATE_FORMAT = "%d-%m-%Y %H:%M"
DEFAULT_COUNTRY = "IN"
MEASUREMENTS = ("weight", "length", "width", "height")
CANCEL_ALREADY_DONE = ("already cancelled", "already canceled")


@dataclass
class PackageMetrics:
    """Aggregate physical data of the parcel."""
    weight: float = 0.0  # kg
    length: float = 0.0  # cm, max across items
    breadth: float = 0.0  # cm, max across items
    height: float = 0.0  # cm, stacked

    def add(self, weight_kg: float, length: float, breadth: float, height: float, quantity: int) -> None:
        self.weight += weight_kg * quantity
        self.length = max(self.length, length)
        self.breadth = max(self.breadth, breadth)
        self.height += height * quantity


@dataclass
class ShipmentDocuments:
    label_url: str = ""
    invoice_url: str = ""
    manifest_url: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {
            "label_url": self.label_url,
            "invoice_url": self.invoice_url,
            "manifest_url": self.manifest_url,
        }


@dataclass
class ShipmentResult:
    """What the host stores on its fulfillment record."""
    order_id: Any  # Shiprocket order id
    shipment_id: Any
    channel_order_id: str  # our "<host id>-<timestamp>" id
    awb: str
    courier_company_id: Optional[int]
    courier_name: Optional[str]
    tracking_url: str
    documents: ShipmentDocuments = field(default_factory=ShipmentDocuments)
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def tracking_number(self) -> str:
        return self.awb

    def to_fulfillment_data(self) -> Dict[str, Any]:
        data = {
            "order_id": self.order_id,
            "sr_order_id": self.order_id,
            "shipment_id": self.shipment_id,
            "channel_order_id": self.channel_order_id,
            "awb": self.awb,
            "tracking_number": self.awb,
            "tracking_url": self.tracking_url,
            "courier_company_id": self.courier_company_id,
            "courier_name": self.courier_name,
        }
        data.update(self.documents.to_dict())
        return data


def round_price(value: Any) -> int:
    """Half-up rounding to whole rupees."""
    return int(Decimal(str(value or 0)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _positive_number(value: Any) -> Optional[float]:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None


class ShipmentService:
    """Shiprocket shipment creation and cancellation."""

    def __init__(
        self,
        client: ShiprocketClientManager,
        pickup_location: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.client = client
        self.pickup_location = pickup_location or client.pickup_location or "Primary"
        self._clock = clock

    # ==================== Pre-flight ====================

    def compute_package_metrics(
        self,
        items: Sequence[FulfillmentItem],
        order: HostOrder,
    ) -> PackageMetrics:
        """Aggregate item measurements; raises on the first item that cannot be measured."""
        lines = {line.id: line for line in order.items}
        metrics = PackageMetrics()

        if not items:
            raise ShiprocketInvalidDataError("Fulfillment has no items", field="items")

        for item in items:
            title = item.title or item.line_item_id
            line = lines.get(item.line_item_id)
            if line is None:
                raise ShiprocketInvalidDataError(
                    f"Order item not found for fulfillment item: {title}",
                    field="line_item_id",
                    details={"line_item_id": item.line_item_id},
                )

            variant = line.variant
            if variant is None:
                raise ShiprocketInvalidDataError(
                    f"Variant data missing for item: {title}",
                    field="variant",
                    details={"line_item_id": item.line_item_id},
                )

            values = {name: _positive_number(variant.measurement(name)) for name in MEASUREMENTS}
            missing = [name for name in MEASUREMENTS if values[name] is None]
            if missing:
                raise ShiprocketInvalidDataError(
                    f"Missing {', '.join(missing)} for \"{title}\". "
                    f"Set weight, length, width and height on the variant.",
                    field=missing[0],
                    details={"line_item_id": item.line_item_id, "missing": missing},
                )

            quantity = int(item.quantity or 1)
            metrics.add(
                weight_kg=values["weight"] / 1000,
                length=values["length"],
                breadth=values["width"],
                height=values["height"],
                quantity=quantity,
            )

        metrics.weight = round(metrics.weight, 3)
        return metrics

    def build_order_payload(
        self,
        items: Sequence[FulfillmentItem],
        order: HostOrder,
        metrics: PackageMetrics,
    ) -> Dict[str, Any]:
        """Map the host order onto the /orders/create/adhoc schema."""
        shipping = order.shipping_address or OrderAddress()
        billing = order.billing_address or OrderAddress()
        lines = {line.id: line for line in order.items}
        email = order.email

        payload: Dict[str, Any] = {
            "order_id": f"{order.id}-{int(self._clock())}",
            "order_date": order.created_at.strftime(ORDER_DATE_FORMAT),
            "pickup_location": self.pickup_location,

            "billing_customer_name": require_field(billing.first_name, "Billing First Name"),
            "billing_last_name": billing.last_name or "",
            "billing_address": require_field(shipping.address_1 or billing.address_1, "Billing Address"),
            "billing_address_2": shipping.address_2 or billing.address_2 or "",
            "billing_city": require_field(shipping.city or billing.city, "Billing City"),
            "billing_pincode": validate_pincode(
                require_field(shipping.postal_code or billing.postal_code, "Billing Pincode"),
                "Billing Pincode",
            ),
            "billing_state": require_field(shipping.province or billing.province, "Billing State"),
            "billing_country": shipping.country_code or billing.country_code or DEFAULT_COUNTRY,
            "billing_email": require_field(email, "Billing Email"),
            "billing_phone": validate_phone(
                require_field(shipping.phone or billing.phone, "Billing Phone"),
                "Billing Phone",
            ),

            "shipping_is_billing": True,
            "shipping_customer_name": require_field(shipping.first_name, "Shipping First Name"),
            "shipping_last_name": shipping.last_name or "",
            "shipping_address": require_field(shipping.address_1, "Shipping Address"),
            "shipping_address_2": shipping.address_2 or "",
            "shipping_city": require_field(shipping.city, "Shipping City"),
            "shipping_pincode": validate_pincode(
                require_field(shipping.postal_code, "Shipping Pincode"),
                "Shipping Pincode",
            ),
            "shipping_country": shipping.country_code or DEFAULT_COUNTRY,
            "shipping_state": require_field(shipping.province, "Shipping State"),
            "shipping_email": require_field(email, "Shipping Email"),
            "shipping_phone": validate_phone(require_field(shipping.phone, "Shipping Phone"), "Shipping Phone"),

            "order_items": [],
            "payment_method": "Prepaid",
            "sub_total": 0,
            "length": metrics.length,
            "breadth": metrics.breadth,
            "height": metrics.height,
            "weight": metrics.weight,
        }

        sub_total = Decimal("0")
        for item in items:
            line: OrderLineItem = lines[item.line_item_id]
            variant = line.variant
            quantity = int(item.quantity or 1)
            payload["order_items"].append({
                "name": item.title or line.title,
                "sku": variant.sku or line.variant_sku or item.sku or item.line_item_id,
                "units": quantity,
                "selling_price": round_price(line.unit_price),
                "discount": "",
                "tax": "",
                "hsn": int(variant.hs_code) if variant.hs_code and str(variant.hs_code).isdigit() else 0,
            })
            sub_total += Decimal(str(line.unit_price or 0)) * quantity

        payload["sub_total"] = float(sub_total)
        return payload

    # ==================== Creation ====================

    async def create_shipment(
        self,
        items: Sequence[FulfillmentItem],
        order: HostOrder,
    ) -> ShipmentResult:
        """
        Create the remote order, assign a waybill and request documents.

        Raises:
            ShiprocketInvalidDataError: local data problem (no network call made)
                or the carrier rejected fields
            ShiprocketNoCourierError: no courier accepted the shipment
        """
        metrics = self.compute_package_metrics(items, order)
        payload = self.build_order_payload(items, order, metrics)

        logger.info(
            f"[SHIPMENT] Creating Shiprocket order {payload['order_id']} "
            f"({metrics.weight}kg, {metrics.length}x{metrics.breadth}x{metrics.height}cm)"
        )
        created = await self.client.request("POST", CREATE_ORDER_PATH, json=payload, operation="create_order")

        shipment_id = created.get("shipment_id")
        remote_order_id = created.get("order_id")
        if not shipment_id:
            logger.error(f"[SHIPMENT] Order {payload['order_id']} created without shipment_id: {created}")
            raise ShiprocketInvalidDataError(
                "Shiprocket order created but no shipment ID returned",
                code="SHIPROCKET_NO_SHIPMENT_ID",
                details={"order_id": remote_order_id},
            )

        courier_id = await self._resolve_preferred_courier(order, metrics)
        awb_data = await self._assign_awb(shipment_id, remote_order_id, courier_id)

        awb = awb_data.get("awb_code")
        result = ShipmentResult(
            order_id=remote_order_id,
            shipment_id=shipment_id,
            channel_order_id=payload["order_id"],
            awb=awb,
            courier_company_id=awb_data.get("courier_company_id"),
            courier_name=awb_data.get("courier_name") or created.get("courier_name"),
            tracking_url=TRACKING_URL_TEMPLATE.format(awb=awb),
            raw=created,
        )
        logger.info(
            f"[SHIPMENT] Created order={remote_order_id} shipment={shipment_id} "
            f"awb={awb} courier={result.courier_name}"
        )

        result.documents = await self.generate_documents(shipment_id, remote_order_id)
        return result

    async def _resolve_preferred_courier(self, order: HostOrder, metrics: PackageMetrics) -> Optional[int]:
        shipping = order.shipping_address or OrderAddress()
        billing = order.billing_address or shipping
        pickup_pincode = shipping.postal_code
        delivery_pincode = billing.postal_code
        if not pickup_pincode or not delivery_pincode:
            return None

        try:
            return await self.client.get_preferred_courier(
                pickup_pincode,
                delivery_pincode,
                weight=metrics.weight,
                cod=order.payment_status == "awaiting",
            )
        except ShiprocketError as e:
            logger.warning(f"[SHIPMENT] Courier preference lookup failed, using auto-assign: {e.message}")
            return None

    async def _assign_awb(self, shipment_id: Any, remote_order_id: Any, courier_id: Optional[int]) -> Dict[str, Any]:
        body: Dict[str, Any] = {"shipment_id": shipment_id}
        if courier_id:
            body["courier_id"] = courier_id

        details = {"shipment_id": shipment_id, "order_id": remote_order_id}
        try:
            response = await self.client.request("POST", ASSIGN_AWB_PATH, json=body, operation="assign_awb")
        except (ShiprocketInvalidDataError, ShiprocketNotFoundError) as e:
            await self._compensate(remote_order_id)
            if e.carrier_status is None:
                raise
            raise ShiprocketNoCourierError(
                e.message or "AWB assignment rejected - no courier available",
                details={**details, "carrier_status": e.carrier_status},
            ) from e
        except ShiprocketError:
            await self._compensate(remote_order_id)
            raise

        data = ((response.get("response") or {}).get("data")) or {}
        if response.get("awb_assign_status") != 1 or not data.get("awb_code"):
            await self._compensate(remote_order_id)
            raise ShiprocketNoCourierError(
                response.get("message") or "AWB assignment failed - no courier available",
                details=details,
            )

        return data

    async def _compensate(self, remote_order_id: Any) -> None:
        """Cancel a remote order left without a waybill. Failures are logged only."""
        if not remote_order_id:
            return
        try:
            await self.cancel_shipment(remote_order_id)
            logger.info(f"[SHIPMENT] Cancelled order {remote_order_id} after failed AWB assignment")
        except ShiprocketError as e:
            logger.error(f"[SHIPMENT] Could not cancel order {remote_order_id} after AWB failure: {e.message}")

    # ==================== Cancellation ====================

    async def cancel_shipment(self, remote_order_id: Any) -> None:
        """Cancel a Shiprocket order. Already-cancelled orders count as success."""
        try:
            await self.client.request(
                "POST",
                CANCEL_ORDER_PATH,
                json={"ids": [remote_order_id]},
                operation="cancel_order",
            )
        except ShiprocketError as e:
            text = f"{e.message} {e.carrier_payload or ''}".lower()
            if any(marker in text for marker in CANCEL_ALREADY_DONE) or (
                e.carrier_status == 400 and "cannot cancel" in text
            ):
                logger.info(f"[SHIPMENT] Order {remote_order_id} already cancelled or not cancellable, skipping")
                return
            raise
        logger.info(f"[SHIPMENT] Cancelled Shiprocket order {remote_order_id}")

    # ==================== Documents ====================

    async def generate_documents(self, shipment_id: Any, order_id: Any) -> ShipmentDocuments:
        """
        Request manifest, label and invoice concurrently.

        Each document is independent; a failed one comes back as "".
        """
        manifest, label, invoice = await asyncio.gather(
            self._safe_post(GENERATE_MANIFEST_PATH, {"order_ids": [shipment_id]}, "generate_manifest"),
            self._safe_post(GENERATE_LABEL_PATH, {"shipment_id": [shipment_id]}, "generate_label"),
            self._safe_post(PRINT_INVOICE_PATH, {"ids": [order_id]}, "print_invoice"),
        )
        return ShipmentDocuments(
            manifest_url=_extract_document_url(manifest, "manifest_url", "status", 1),
            label_url=_extract_document_url(label, "label_url", "label_created", 1),
            invoice_url=_extract_document_url(invoice, "invoice_url", "is_invoice_created", True),
        )

    async def _safe_post(self, path: str, body: Dict[str, Any], operation: str) -> Any:
        try:
            return await self.client.request("POST", path, json=body, operation=operation)
        except ShiprocketError as e:
            logger.warning(f"[SHIPMENT] {operation} failed: {e.message}")
            return None


def _extract_document_url(response: Any, url_key: str, flag_key: str, flag_value: Any) -> str:
    """Shiprocket wraps document responses inconsistently: bare, under "data", or as a list."""
    if not response:
        return ""
    data = response.get("data", response) if isinstance(response, dict) else response
    target = data[0] if isinstance(data, list) and data else data
    if not isinstance(target, dict):
        return ""
    if target.get(flag_key) != flag_value:
        return ""
    return target.get(url_key) or ""
