"""
Shiprocket API client manager

One instance per process, created by the app lifespan and shared through
app.state. It owns:
- the httpx connection pool
- the cached bearer token and its refresh
- the delivery-estimate cache and pickup pincode cache

Token lifecycle:
- Login exchanges email/password for a bearer token valid for 10 days.
  The token is treated as expiring after 8 days, and as invalid 60 seconds
  before that.
- Concurrent refresh requests share one in-flight login call.
- A failed refresh leaves the previous token in place.
- An authenticated call answered with 401 is retried once after a refresh.
  A second 401 raises ShiprocketUnauthorizedError.
"""
import asyncio
import logging
import math
import re
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from shiprocket_fulfillment.core.estimate_cache import EstimateCache
from shiprocket_fulfillment.core.exceptions import (
    ShiprocketError,
    ShiprocketMisconfiguredError,
    ShiprocketNotFoundError,
    ShiprocketUnauthorizedError,
    ShiprocketUnavailableError,
)
from shiprocket_fulfillment.core.utils import mask_secret
from shiprocket_fulfillment.services.shiprocket_errors import (
    translate_response,
    translate_transport_error,
)

logger = logging.getLogger(__name__)

SHIPROCKET_BASE_URL = "https://apiv2.shiprocket.in/v1/external"

# API endpoints
LOGIN_PATH = "/auth/login"
SERVICEABILITY_PATH = "/courier/serviceability/"
PICKUP_LOCATIONS_PATH = "/settings/company/pickup"
TRACK_AWB_PATH = "/courier/track/awb/{awb}"

TOKEN_SAFETY_MARGIN_SECONDS = 60
DEFAULT_TOKEN_TTL_SECONDS = 8 * 24 * 60 * 60
DEFAULT_TIMEOUT_SECONDS = 15.0
DEFAULT_WEIGHT_KG = 0.5

LEADING_INT = re.compile(r"^\s*(\d+)")


class DeliveryPreference(str, Enum):
    FASTEST = "fastest"
    CHEAPEST = "cheapest"


@dataclass
class ShiprocketCredentials:
    """Shiprocket API user credentials."""
    email: str
    password: str

    def __repr__(self) -> str:
        return f"ShiprocketCredentials(email={mask_secret(self.email)!r})"


@dataclass(frozen=True)
class AuthToken:
    """Bearer token; replaced on refresh, never mutated."""
    value: str
    expires_at: float  # epoch seconds

    def is_valid(self, now: float) -> bool:
        return now < self.expires_at - TOKEN_SAFETY_MARGIN_SECONDS

    @property
    def expires_at_datetime(self) -> datetime:
        return datetime.fromtimestamp(self.expires_at, tz=timezone.utc)


@dataclass(frozen=True)
class DeliveryEstimate:
    """Serviceability answer for one postcode pair."""
    serviceable: bool
    preference: str
    courier_count: int = 0
    courier_name: Optional[str] = None
    courier_company_id: Optional[int] = None
    etd: Optional[str] = None
    estimated_delivery_days: Optional[str] = None
    rate: Optional[float] = None
    is_surface: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ShiprocketChannel:
    """An httpx client paired with a token that was valid when handed out."""
    client: httpx.AsyncClient
    token: AuthToken

    @property
    def headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token.value}"}

    async def send(self, method: str, path: str, **kwargs) -> httpx.Response:
        headers = dict(kwargs.pop("headers", None) or {})
        headers.update(self.headers)
        return await self.client.request(method, path, headers=headers, **kwargs)


# ==================== Courier selection ====================


def _rate_key(courier: Dict[str, Any]) -> float:
    try:
        return float(courier.get("rate"))
    except (TypeError, ValueError):
        return math.inf


def _delivery_days_key(courier: Dict[str, Any]) -> float:
    match = LEADING_INT.match(str(courier.get("estimated_delivery_days") or ""))
    return int(match.group(1)) if match else math.inf


def select_courier(
    couriers: List[Dict[str, Any]],
    preference: DeliveryPreference,
) -> Optional[Dict[str, Any]]:
    """
    Pick one courier from the serviceability list.

    CHEAPEST sorts by ascending rate, FASTEST by ascending delivery days with
    unparsable values last. sorted() is stable so ties keep carrier order.
    """
    if not couriers:
        return None
    key = _rate_key if DeliveryPreference(preference) == DeliveryPreference.CHEAPEST else _delivery_days_key
    return sorted(couriers, key=key)[0]


def build_estimate(couriers: List[Dict[str, Any]], preference: DeliveryPreference) -> DeliveryEstimate:
    preference = DeliveryPreference(preference)
    selected = select_courier(couriers, preference)
    if selected is None:
        return DeliveryEstimate(serviceable=False, preference=preference.value)

    rate = _rate_key(selected)
    days = selected.get("estimated_delivery_days")
    company_id = selected.get("courier_company_id")
    return DeliveryEstimate(
        serviceable=True,
        preference=preference.value,
        courier_count=len(couriers),
        courier_name=selected.get("courier_name"),
        courier_company_id=int(company_id) if company_id is not None else None,
        etd=selected.get("etd"),
        estimated_delivery_days=str(days) if days is not None else None,
        rate=rate if math.isfinite(rate) else None,
        is_surface=bool(selected.get("is_surface")),
    )


# ==================== Client manager ====================


class ShiprocketClientManager:
    """
    Authenticated Shiprocket API access shared by every component.

    Construct once per process and close() on shutdown.
    """

    def __init__(
        self,
        credentials: Optional[ShiprocketCredentials],
        base_url: str = SHIPROCKET_BASE_URL,
        preference: DeliveryPreference = DeliveryPreference.FASTEST,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        token_ttl_seconds: float = DEFAULT_TOKEN_TTL_SECONDS,
        estimate_cache: Optional[EstimateCache] = None,
        pickup_pincode_ttl_seconds: float = 60 * 60,
        pickup_location: Optional[str] = None,
        clock: Callable[[], float] = time.time,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.credentials = credentials
        self.base_url = base_url.rstrip("/")
        self.preference = DeliveryPreference(preference)
        self.timeout = timeout
        self.token_ttl_seconds = token_ttl_seconds
        self.pickup_location = pickup_location
        self._clock = clock
        self._transport = transport
        self.estimate_cache = estimate_cache if estimate_cache is not None else EstimateCache(clock=clock)
        self._pickup_pincode_cache: EstimateCache = EstimateCache(
            ttl_seconds=pickup_pincode_ttl_seconds,
            max_size=64,
            clock=clock,
            name="PICKUP_PINCODE_CACHE",
        )
        self._token: Optional[AuthToken] = None
        self._refresh_task: Optional[asyncio.Task] = None
        self._http_client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_settings(cls, settings, **kwargs) -> "ShiprocketClientManager":
        credentials = None
        if settings.shiprocket_credentials_configured:
            credentials = ShiprocketCredentials(
                email=settings.SHIPROCKET_EMAIL,
                password=settings.SHIPROCKET_PASSWORD,
            )
        clock = kwargs.pop("clock", time.time)
        estimate_cache = EstimateCache(
            ttl_seconds=settings.SHIPROCKET_ESTIMATE_CACHE_TTL_SECONDS,
            max_size=settings.SHIPROCKET_ESTIMATE_CACHE_SIZE,
            clock=clock,
        )
        return cls(
            credentials,
            base_url=settings.SHIPROCKET_BASE_URL,
            preference=DeliveryPreference(settings.SHIPROCKET_DELIVERY_PREFERENCE),
            timeout=settings.SHIPROCKET_TIMEOUT_SECONDS,
            token_ttl_seconds=settings.SHIPROCKET_TOKEN_TTL_DAYS * 24 * 60 * 60,
            estimate_cache=estimate_cache,
            pickup_pincode_ttl_seconds=settings.SHIPROCKET_PICKUP_PINCODE_TTL_SECONDS,
            pickup_location=settings.SHIPROCKET_PICKUP_LOCATION,
            clock=clock,
            **kwargs,
        )

    @property
    def is_configured(self) -> bool:
        return self.credentials is not None

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers={"Content-Type": "application/json"},
                transport=self._transport,
            )
        return self._http_client

    async def close(self):
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    # ==================== Token lifecycle ====================

    def is_token_valid(self) -> bool:
        """Non-blocking: True while now < expires_at - 60s."""
        token = self._token
        return token is not None and token.is_valid(self._clock())

    @property
    def token_expires_at(self) -> Optional[datetime]:
        return self._token.expires_at_datetime if self._token else None

    async def acquire_channel(self) -> ShiprocketChannel:
        """Return a client carrying a non-expired token, waiting out any in-flight refresh."""
        token = await self._ensure_token()
        return ShiprocketChannel(client=await self._get_http_client(), token=token)

    async def force_refresh(self) -> AuthToken:
        """Log in again regardless of the current token; joins an in-flight refresh."""
        return await self._refresh()

    async def _ensure_token(self) -> AuthToken:
        in_flight = self._refresh_task
        if in_flight is not None:
            try:
                return await asyncio.shield(in_flight)
            except ShiprocketError:
                # Previous token stays usable if it has not expired
                current = self._token
                if current is not None and current.is_valid(self._clock()):
                    return current
                raise

        current = self._token
        if current is not None and current.is_valid(self._clock()):
            return current
        return await self._refresh()

    async def _refresh(self, rejected: Optional[AuthToken] = None) -> AuthToken:
        """
        Start a login or join the one already running.

        With rejected set, a token that has already been swapped in by another
        caller is returned without a new login.
        """
        current = self._token
        if (
            rejected is not None
            and current is not None
            and current.value != rejected.value
            and current.is_valid(self._clock())
        ):
            return current

        task = self._refresh_task
        if task is None:
            task = asyncio.ensure_future(self._run_refresh())
            self._refresh_task = task
        return await asyncio.shield(task)

    async def _run_refresh(self) -> AuthToken:
        try:
            return await self._login()
        finally:
            self._refresh_task = None

    async def _login(self) -> AuthToken:
        if self.credentials is None:
            raise ShiprocketMisconfiguredError(
                "Shiprocket credentials (SHIPROCKET_EMAIL, SHIPROCKET_PASSWORD) are not configured"
            )

        client = await self._get_http_client()
        logger.info(f"[SHIPROCKET] Authenticating as {mask_secret(self.credentials.email)}")

        try:
            response = await client.post(
                LOGIN_PATH,
                json={"email": self.credentials.email, "password": self.credentials.password},
            )
        except httpx.RequestError as e:
            logger.error(f"[SHIPROCKET] Authentication request failed: {e}")
            raise translate_transport_error(e, "authenticate")

        if response.status_code in (400, 401, 403):
            logger.error(f"[SHIPROCKET] Authentication rejected: {response.status_code}")
            raise ShiprocketUnauthorizedError(
                "Shiprocket authentication failed. Please verify your API credentials.",
                code="SHIPROCKET_AUTH_FAILED",
                details={"status": response.status_code, "operation": "authenticate"},
            )
        if response.status_code >= 400:
            raise translate_response(response, "authenticate")

        try:
            value = response.json().get("token")
        except (ValueError, AttributeError):
            value = None
        if not value:
            raise ShiprocketUnauthorizedError(
                "Shiprocket login response did not include a token",
                code="SHIPROCKET_AUTH_FAILED",
                details={"status": response.status_code, "operation": "authenticate"},
            )

        token = AuthToken(value=value, expires_at=self._clock() + self.token_ttl_seconds)
        self._token = token
        logger.info(f"[SHIPROCKET] Token obtained, valid until {token.expires_at_datetime.isoformat()}")
        return token

    # ==================== Authenticated calls ====================

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Any] = None,
        params: Optional[Dict[str, Any]] = None,
        operation: Optional[str] = None,
    ) -> Any:
        """
        Make an authenticated API call and return the decoded JSON body.

        Raises the translated ShiprocketError for any non-2xx response.
        """
        operation = operation or f"{method.upper()} {path}"
        channel = await self.acquire_channel()
        response = await self._send(channel, method, path, json, params, operation)

        if response.status_code == 401:
            logger.warning(f"[SHIPROCKET] 401 on {operation}, refreshing token and retrying once")
            token = await self._refresh(rejected=channel.token)
            channel = ShiprocketChannel(client=channel.client, token=token)
            response = await self._send(channel, method, path, json, params, operation)
            if response.status_code == 401:
                logger.error(f"[SHIPROCKET] {operation} denied again after token refresh")
                raise ShiprocketUnauthorizedError(
                    f"[{operation}] Shiprocket rejected the request after re-authentication",
                    code="SHIPROCKET_AUTH_RETRY_FAILED",
                    details={"status": 401, "operation": operation},
                )

        if response.status_code >= 400:
            raise translate_response(response, operation)

        logger.debug(f"[SHIPROCKET] {operation} -> {response.status_code}")
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            raise ShiprocketUnavailableError(
                f"[{operation}] Shiprocket returned a non-JSON response",
                code="SHIPROCKET_BAD_RESPONSE",
                details={"status": response.status_code, "operation": operation},
            )

    async def _send(
        self,
        channel: ShiprocketChannel,
        method: str,
        path: str,
        json: Optional[Any],
        params: Optional[Dict[str, Any]],
        operation: str,
    ) -> httpx.Response:
        try:
            return await channel.send(method.upper(), path, json=json, params=params)
        except httpx.RequestError as e:
            logger.error(f"[SHIPROCKET] {operation} request failed: {e}")
            raise translate_transport_error(e, operation)

    # ==================== Serviceability ====================

    async def get_serviceable_couriers(
        self,
        pickup_postcode: str,
        delivery_postcode: str,
        weight: float = DEFAULT_WEIGHT_KG,
        cod: bool = False,
    ) -> List[Dict[str, Any]]:
        """Raw courier list for a lane. A 404 means nobody serves the lane."""
        try:
            data = await self.request(
                "GET",
                SERVICEABILITY_PATH,
                params={
                    "pickup_postcode": pickup_postcode,
                    "delivery_postcode": delivery_postcode,
                    "weight": weight,
                    "cod": 1 if cod else 0,
                },
                operation="serviceability",
            )
        except ShiprocketNotFoundError:
            return []

        couriers = (data.get("data") or {}).get("available_courier_companies") or []
        return list(couriers)

    async def get_delivery_estimate(
        self,
        pickup_postcode: str,
        delivery_postcode: str,
        weight: Optional[float] = None,
        cod: bool = False,
    ) -> DeliveryEstimate:
        """
        Serviceability and price for a lane using the configured preference.

        Results, including "not serviceable", are cached per
        (pickup, delivery, weight, cod).
        """
        weight = DEFAULT_WEIGHT_KG if weight is None else float(weight)
        key: Tuple[str, str, float, int] = (
            str(pickup_postcode),
            str(delivery_postcode),
            weight,
            1 if cod else 0,
        )

        cached = self.estimate_cache.get(key)
        if cached is not None:
            logger.debug(f"[SHIPROCKET] Estimate cache hit for {key}")
            return cached

        couriers = await self.get_serviceable_couriers(pickup_postcode, delivery_postcode, weight, cod)
        estimate = build_estimate(couriers, self.preference)
        self.estimate_cache.set(key, estimate)
        logger.info(
            f"[SHIPROCKET] Estimate {pickup_postcode}->{delivery_postcode} ({weight}kg): "
            f"{estimate.courier_count} couriers, selected {estimate.courier_name}"
        )
        return estimate

    async def get_preferred_courier(
        self,
        pickup_postcode: str,
        delivery_postcode: str,
        weight: Optional[float] = None,
        cod: bool = False,
    ) -> Optional[int]:
        """Courier company id the preference would pick, None when not serviceable."""
        estimate = await self.get_delivery_estimate(pickup_postcode, delivery_postcode, weight, cod)
        return estimate.courier_company_id if estimate.serviceable else None

    async def calculate_shipping_rate(
        self,
        pickup_postcode: str,
        delivery_postcode: str,
        weight: float,
        cod: bool = False,
        allowed_courier_ids: Optional[List[int]] = None,
    ) -> int:
        """Cheapest rate across allowed couriers, rounded up to whole rupees."""
        couriers = await self.get_serviceable_couriers(pickup_postcode, delivery_postcode, weight, cod)
        if allowed_courier_ids:
            allowed = {int(c) for c in allowed_courier_ids}
            couriers = [c for c in couriers if c.get("courier_company_id") in allowed]

        rates = [r for r in (_rate_key(c) for c in couriers) if math.isfinite(r)]
        if not rates:
            raise ShiprocketNotFoundError(
                f"No courier serves {pickup_postcode} -> {delivery_postcode}",
                code="SHIPROCKET_NOT_SERVICEABLE",
            )
        return math.ceil(min(rates))

    # ==================== Pickup locations ====================

    async def get_pickup_locations(self) -> List[Dict[str, Any]]:
        data = await self.request("GET", PICKUP_LOCATIONS_PATH, operation="pickup_locations")
        return list((data.get("data") or {}).get("shipping_address") or [])

    async def get_pickup_pincode(self, location_name: Optional[str] = None) -> str:
        """Postcode of a pickup location; the first location is used if the name is unknown."""
        name = location_name or self.pickup_location or ""
        cached = self._pickup_pincode_cache.get(name)
        if cached is not None:
            return cached

        locations = await self.get_pickup_locations()
        if not locations:
            raise ShiprocketNotFoundError(
                "No pickup locations configured in Shiprocket",
                code="SHIPROCKET_NO_PICKUP_LOCATION",
            )

        match = next((loc for loc in locations if loc.get("pickup_location") == name), None)
        if match is None:
            logger.warning(f"[SHIPROCKET] Pickup location {name!r} not found, using first location")
            match = locations[0]

        pincode = str(match.get("pin_code") or "")
        if not pincode:
            raise ShiprocketNotFoundError(
                f"Pickup location {match.get('pickup_location')!r} has no pincode",
                code="SHIPROCKET_NO_PICKUP_LOCATION",
            )
        self._pickup_pincode_cache.set(name, pincode)
        return pincode

    # ==================== Tracking ====================

    async def get_tracking(self, awb: str) -> Dict[str, Any]:
        return await self.request("GET", TRACK_AWB_PATH.format(awb=awb), operation="track_awb")
