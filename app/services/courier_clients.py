"""
Courier API clients.

Handles the HTTP side of courier integration:
- Per-courier authentication (bearer token, API-key header, basic auth, token header)
- Booking through a configured endpoint or the built-in TCS / Leopard / PostEx APIs
- Shipment tracking with status normalisation
- Booking cancellation
- Mock mode for staging environments

Redirects are followed manually so auth headers survive them.
"""
import asyncio
import base64
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any
from urllib.parse import urljoin

import httpx

from app.config import settings
from app.core.errors import CourierError
from app.models.dispatch import Courier, CourierAuthType, DispatchStatus

logger = logging.getLogger(__name__)


TCS_BOOKING_URL = "https://api.tcs.com.pk/api/v1/bookings"
TCS_TRACKING_URL = "https://api.tcs.com.pk/api/v1/tracking/{tracking_id}"
LEOPARD_BOOKING_URL = "https://api.leopardscourier.com/api/bookings/store"
LEOPARD_TRACKING_URL = "https://api.leopardscourier.com/api/packet/track"
POSTEX_BASE_URL = "https://api.postex.pk/services/integration/api/order"
POSTEX_BOOKING_URL = f"{POSTEX_BASE_URL}/v3/create-order"
POSTEX_TRACKING_URL = f"{POSTEX_BASE_URL}/v1/track-order/{{tracking_id}}"
POSTEX_INVOICE_URL = f"{POSTEX_BASE_URL}/v1/get-invoice"
POSTEX_CANCEL_URL = f"{POSTEX_BASE_URL}/v1/cancel-order"

REDIRECT_STATUSES = {301, 302, 303, 307, 308}

TRACKING_STATUS_MAP = {
    "BOOKED": DispatchStatus.BOOKED.value,
    "DISPATCHED": DispatchStatus.IN_TRANSIT.value,
    "IN_TRANSIT": DispatchStatus.IN_TRANSIT.value,
    "OUT_FOR_DELIVERY": DispatchStatus.OUT_FOR_DELIVERY.value,
    "DELIVERED": DispatchStatus.DELIVERED.value,
    "RETURNED": DispatchStatus.RETURNED.value,
}

# Minimal single-page PDF used as the label in mock mode
MOCK_LABEL_PDF = (
    b"%PDF-1.4\n1 0 obj<</Type/Catalog/Pages 2 0 R>>endobj\n"
    b"2 0 obj<</Type/Pages/Kids[3 0 R]/Count 1>>endobj\n"
    b"3 0 obj<</Type/Page/Parent 2 0 R/MediaBox[0 0 288 432]>>endobj\n"
    b"trailer<</Root 1 0 R>>\n%%EOF"
)


def normalize_tracking_status(raw_status: Optional[str]) -> str:
    """Map courier-specific status strings to dispatch statuses (default in_transit)."""
    if not raw_status:
        return DispatchStatus.IN_TRANSIT.value
    key = re.sub(r"[\s\-]+", "_", str(raw_status).strip().upper())
    return TRACKING_STATUS_MAP.get(key, DispatchStatus.IN_TRANSIT.value)


def order_ref_number(order_number: str) -> str:
    """Strip an alphabetic prefix such as SHOP- from an order number."""
    return re.sub(r"^[A-Z]+-", "", order_number)


def _dig(data: Dict[str, Any], *paths: str) -> Any:
    """First non-empty value among dotted paths."""
    for path in paths:
        value: Any = data
        for key in path.split("."):
            if not isinstance(value, dict):
                value = None
                break
            value = value.get(key)
        if value:
            return value
    return None


def extract_tracking_id(courier_code: str, response: Dict[str, Any]) -> Optional[str]:
    if courier_code == "POSTEX":
        value = _dig(response, "dist.trackingNumber", "dist.cn", "trackingNumber", "cn")
    else:
        value = _dig(
            response,
            "tracking_number", "track_number", "trackingNumber", "cn",
            "consignment_number", "consignmentNumber",
            "data.tracking_number", "data.trackingNumber", "data.cn",
            "result.tracking_number", "result.track_number",
            "shipment.tracking_number",
            "dist.trackingNumber", "dist.cn",
        )
    return str(value) if value else None


def extract_label(response: Dict[str, Any]) -> tuple:
    """Returns (label_url, label_data) from any of the known response shapes."""
    label_url = _dig(
        response,
        "label_url", "labelUrl", "dist.label_url", "dist.labelUrl", "dist.pdfUrl",
        "data.label_url", "data.labelUrl",
    )
    label_data = _dig(
        response,
        "label_data", "labelData", "dist.pdfData", "dist.label_data", "dist.labelData",
        "data.label_data", "data.labelData",
    )
    return label_url, label_data


@dataclass
class BookingAddress:
    """Pickup or delivery address."""
    name: str
    phone: str
    address: str
    city: str


@dataclass
class BookingItem:
    name: str
    quantity: int = 1


@dataclass
class BookingRequest:
    """Everything a courier needs to book one parcel."""
    order_number: str
    pickup_address: BookingAddress
    delivery_address: BookingAddress
    weight: float = 1.0
    pieces: int = 1
    cod_amount: float = 0
    special_instructions: str = ""
    items: List[BookingItem] = field(default_factory=list)

    @property
    def item_count(self) -> int:
        if self.items:
            return sum(item.quantity for item in self.items)
        return self.pieces

    @property
    def order_detail(self) -> str:
        if self.items:
            return ", ".join(f"{item.name} (x{item.quantity})" for item in self.items)
        return f"{self.pieces} items"


@dataclass
class BookingResult:
    tracking_id: Optional[str]
    label_url: Optional[str] = None
    label_data: Optional[str] = None
    label_format: str = "pdf"
    booking_id: Optional[str] = None
    raw_response: Dict[str, Any] = field(default_factory=dict)
    is_mock: bool = False

    @property
    def has_label(self) -> bool:
        return bool(self.label_url or self.label_data)


@dataclass
class TrackingInfo:
    tracking_id: str
    status: str
    current_location: Optional[str] = None
    status_history: List[Any] = field(default_factory=list)
    estimated_delivery: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


class CourierClient:
    """HTTP client for one courier configuration."""

    label_retry_delays = (2.0, 3.0, 4.0)

    def __init__(
        self,
        courier: Courier,
        api_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.courier = courier
        self.code = (courier.code or "").upper()
        self.api_key = api_key if api_key is not None else settings.get_courier_api_key(self.code)
        self.transport = transport

    @property
    def is_mock(self) -> bool:
        return self.courier.api_endpoint == "mock" or settings.COURIER_BOOKING_MODE == "mock"

    def build_auth_headers(self) -> Dict[str, str]:
        """Headers for the courier's auth scheme plus configured custom headers."""
        headers = {"Content-Type": "application/json"}
        api_key = self.api_key or ""
        auth_config = self.courier.auth_config or {}
        auth_type = self.courier.auth_type

        if auth_type == CourierAuthType.BEARER_TOKEN.value:
            headers["Authorization"] = f"Bearer {api_key}"
        elif auth_type == CourierAuthType.API_KEY_HEADER.value:
            headers[auth_config.get("header_name") or "X-API-Key"] = api_key
        elif auth_type == CourierAuthType.BASIC_AUTH.value:
            username = auth_config.get("username") or ""
            encoded = base64.b64encode(f"{username}:{api_key}".encode()).decode()
            headers["Authorization"] = f"Basic {encoded}"
        elif auth_type == CourierAuthType.TOKEN_HEADER.value:
            headers["token"] = api_key

        if auth_config.get("custom_headers"):
            headers.update(auth_config["custom_headers"])

        # PostEx rejects requests without the token header whatever the configured scheme
        if self.code == "POSTEX" and not headers.get("token"):
            headers["token"] = api_key

        return headers

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=settings.COURIER_TIMEOUT_SECONDS,
            transport=self.transport,
            follow_redirects=False,
        )

    async def _request(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        """Send a request, following redirects by hand with the same headers."""
        current_url = url
        try:
            async with self._client() as client:
                for _ in range(settings.COURIER_MAX_REDIRECTS):
                    response = await client.request(method, current_url, headers=headers, json=json, params=params)
                    if response.status_code not in REDIRECT_STATUSES:
                        return response
                    location = response.headers.get("location")
                    if not location:
                        raise CourierError("Redirect without Location header", error_code="BOOKING_API_ERROR", courier=self.code)
                    current_url = urljoin(current_url, location)
                    logger.debug("%s: following redirect to %s", self.code, current_url)
        except httpx.TimeoutException as e:
            raise CourierError(
                f"Request to {self.courier.name} timed out",
                error_code="NETWORK_TIMEOUT",
                status_code=504,
                details={"error": str(e)},
                courier=self.code,
            )
        except httpx.ConnectError as e:
            message = str(e)
            dns_failure = "getaddrinfo" in message or "Name or service not known" in message or "DNS" in message
            raise CourierError(
                "Cannot reach courier API (DNS resolution failed)" if dns_failure else "Network connectivity issue with courier API",
                error_code="NETWORK_DNS_ERROR" if dns_failure else "NETWORK_ERROR",
                status_code=502,
                details={"error": message},
                courier=self.code,
            )
        except httpx.TransportError as e:
            raise CourierError(
                "Network connectivity issue with courier API",
                error_code="NETWORK_ERROR",
                status_code=502,
                details={"error": str(e)},
                courier=self.code,
            )

        raise CourierError(
            f"Too many redirects ({settings.COURIER_MAX_REDIRECTS})",
            error_code="TOO_MANY_REDIRECTS",
            status_code=502,
            courier=self.code,
        )

    def _raise_for_status(self, response: httpx.Response, action: str) -> None:
        if response.status_code < 400:
            return
        text = response.text[:1000]
        error_code = "BOOKING_API_ERROR" if action == "booking" else f"{action.upper()}_API_ERROR"
        if "Missing request header 'token'" in text:
            error_code = "AUTH_HEADER_DROPPED"
        raise CourierError(
            f"{self.courier.name} {action} failed: {text}",
            error_code=error_code,
            status_code=502,
            details={"status": response.status_code, "response": text},
            courier=self.code,
        )

    def _json(self, response: httpx.Response, action: str) -> Dict[str, Any]:
        """Decode a JSON object body; HTML error pages and bare lists are courier failures."""
        try:
            data = response.json()
        except ValueError:
            data = None
        if not isinstance(data, dict):
            raise CourierError(
                f"{self.courier.name} returned an unreadable {action} response",
                error_code=f"{action.upper()}_INVALID_RESPONSE",
                status_code=502,
                details={
                    "status": response.status_code,
                    "content_type": response.headers.get("content-type"),
                    "response": response.text[:500],
                },
                courier=self.code,
            )
        return data

    # ==================== BOOKING ====================

    def _postex_body(self, request: BookingRequest) -> Dict[str, Any]:
        pickup_code = settings.POSTEX_PICKUP_ADDRESS_CODE
        if not pickup_code:
            raise CourierError(
                "PostEx requires a Pickup Address Code. Configure POSTEX_PICKUP_ADDRESS_CODE.",
                error_code="CONFIGURATION_REQUIRED",
                courier=self.code,
            )
        return {
            "customerName": request.delivery_address.name,
            "customerPhone": request.delivery_address.phone,
            "deliveryAddress": request.delivery_address.address,
            "cityName": request.delivery_address.city,
            "pickupCityName": request.pickup_address.city,
            "transactionNotes": request.special_instructions or "",
            "orderRefNumber": order_ref_number(request.order_number),
            "invoicePayment": request.cod_amount or 0,
            "orderType": "Normal",
            "orderDetail": request.order_detail,
            "pickupAddressCode": pickup_code,
            "items": request.item_count,
        }

    def _generic_body(self, request: BookingRequest) -> Dict[str, Any]:
        template = (self.courier.auth_config or {}).get("request_body_template")
        if template:
            return dict(template)
        return {
            "consignee_name": request.delivery_address.name,
            "consignee_phone": request.delivery_address.phone,
            "consignee_address": request.delivery_address.address,
            "destination_city": request.delivery_address.city,
            "origin_city": request.pickup_address.city,
            "weight": request.weight,
            "pieces": request.pieces,
            "cod_amount": request.cod_amount or 0,
        }

    def _tcs_body(self, request: BookingRequest) -> Dict[str, Any]:
        return {
            "consignee_name": request.delivery_address.name,
            "consignee_phone": request.delivery_address.phone,
            "consignee_address": request.delivery_address.address,
            "consignee_city": request.delivery_address.city,
            "origin_city": request.pickup_address.city,
            "weight": request.weight,
            "pieces": request.pieces,
            "cod_amount": request.cod_amount or 0,
            "service_type": "COD" if request.cod_amount else "overnight",
            "special_instructions": request.special_instructions,
        }

    def _leopard_body(self, request: BookingRequest) -> Dict[str, Any]:
        return {
            "consignee_name": request.delivery_address.name,
            "consignee_phone_number_1": request.delivery_address.phone,
            "consignee_address": request.delivery_address.address,
            "destination_city": request.delivery_address.city,
            "origin_city": request.pickup_address.city,
            "weight": request.weight,
            "pieces": request.pieces,
            "amount": request.cod_amount or 0,
            "service_type_id": 2 if request.cod_amount else 1,
            "special_instructions": request.special_instructions,
        }

    def build_booking_call(self, request: BookingRequest) -> tuple:
        """Returns (url, headers, body) for the booking call."""
        if self.courier.booking_endpoint:
            headers = self.build_auth_headers()
            body = self._postex_body(request) if self.code == "POSTEX" else self._generic_body(request)
            return self.courier.booking_endpoint, headers, body

        if self.code == "TCS":
            return TCS_BOOKING_URL, {"Authorization": f"Bearer {self.api_key or ''}", "Content-Type": "application/json"}, self._tcs_body(request)
        if self.code == "LEOPARD":
            return LEOPARD_BOOKING_URL, {"Authorization": f"Bearer {self.api_key or ''}", "Content-Type": "application/json"}, self._leopard_body(request)
        if self.code == "POSTEX":
            if not self.api_key:
                raise CourierError(
                    "PostEx API key not configured (POSTEX_API_KEY)",
                    error_code="CONFIGURATION_REQUIRED",
                    courier=self.code,
                )
            return POSTEX_BOOKING_URL, {"token": self.api_key, "Content-Type": "application/json"}, self._postex_body(request)

        raise CourierError(
            f"Unsupported courier: {self.code}",
            error_code="UNSUPPORTED_COURIER",
            courier=self.code,
        )

    def _mock_booking(self) -> BookingResult:
        tracking_id = f"{self.code}-MOCK-{str(int(time.time() * 1000))[-8:]}"
        label_data = base64.b64encode(MOCK_LABEL_PDF).decode()
        logger.info("Mock booking for %s: %s", self.code, tracking_id)
        return BookingResult(
            tracking_id=tracking_id,
            label_data=label_data,
            label_format="pdf",
            booking_id=tracking_id,
            raw_response={
                "tracking_number": tracking_id,
                "track_number": tracking_id,
                "status": "success",
                "message": "Mock booking successful",
                "label_data": label_data,
            },
            is_mock=True,
        )

    async def fetch_postex_label(self, tracking_id: str) -> Optional[str]:
        """Download the PostEx invoice PDF as base64; labels appear a few seconds after booking."""
        for attempt, delay in enumerate((0.0,) + tuple(self.label_retry_delays[:-1])):
            if delay:
                await asyncio.sleep(delay)
            try:
                response = await self._request(
                    "GET",
                    POSTEX_INVOICE_URL,
                    headers={"token": self.api_key or ""},
                    params={"trackingNumbers": tracking_id},
                )
            except CourierError as e:
                logger.warning("PostEx label fetch error (attempt %d): %s", attempt + 1, e.message)
                continue
            if response.status_code < 400 and "application/pdf" in response.headers.get("content-type", ""):
                return base64.b64encode(response.content).decode()
            logger.warning("PostEx label not ready (attempt %d): %s", attempt + 1, response.status_code)
        return None

    async def book(self, request: BookingRequest) -> BookingResult:
        """
        Book a parcel.

        Raises:
            CourierError: network, HTTP or configuration failures, or a response
                without a tracking id (BOOKING_MISSING_TRACKING_ID)
        """
        if self.is_mock:
            return self._mock_booking()

        url, headers, body = self.build_booking_call(request)
        logger.info(
            "Booking %s with %s (auth header present: %s)",
            request.order_number, self.code,
            bool(headers.get("Authorization") or headers.get("token")),
        )
        response = await self._request("POST", url, headers=headers, json=body)
        self._raise_for_status(response, "booking")
        data = self._json(response, "booking")

        tracking_id = extract_tracking_id(self.code, data)
        if not tracking_id:
            raise CourierError(
                "Courier booking succeeded but no tracking ID was found in response",
                error_code="BOOKING_MISSING_TRACKING_ID",
                status_code=502,
                details={"response_keys": sorted(data.keys())},
                courier=self.code,
            )

        label_url, label_data = extract_label(data)
        if self.code == "POSTEX" and not (label_url or label_data):
            label_data = await self.fetch_postex_label(tracking_id)

        return BookingResult(
            tracking_id=tracking_id,
            label_url=label_url,
            label_data=label_data,
            label_format=data.get("label_format") or self.courier.label_format or "pdf",
            booking_id=str(data.get("booking_id") or tracking_id),
            raw_response=data,
        )

    # ==================== TRACKING ====================

    async def track(self, tracking_id: str) -> TrackingInfo:
        if self.courier.tracking_endpoint:
            url = self.courier.tracking_endpoint.replace("{tracking_id}", tracking_id)
            response = await self._request("GET", url, headers=self.build_auth_headers())
            self._raise_for_status(response, "tracking")
            data = self._json(response, "tracking")
            return TrackingInfo(
                tracking_id=tracking_id,
                status=normalize_tracking_status(data.get("status")),
                current_location=data.get("current_location") or data.get("location"),
                status_history=data.get("tracking_history") or data.get("history") or [],
                estimated_delivery=data.get("estimated_delivery"),
                raw=data,
            )

        if self.code == "TCS":
            response = await self._request(
                "GET",
                TCS_TRACKING_URL.format(tracking_id=tracking_id),
                headers={"Authorization": f"Bearer {self.api_key or ''}"},
            )
            self._raise_for_status(response, "tracking")
            data = self._json(response, "tracking")
            return TrackingInfo(
                tracking_id=tracking_id,
                status=normalize_tracking_status(data.get("status")),
                current_location=data.get("current_location"),
                status_history=data.get("tracking_history") or [],
                estimated_delivery=data.get("estimated_delivery"),
                raw=data,
            )

        if self.code == "LEOPARD":
            response = await self._request(
                "POST",
                LEOPARD_TRACKING_URL,
                headers={"Authorization": f"Bearer {self.api_key or ''}", "Content-Type": "application/json"},
                json={"track_numbers": [tracking_id]},
            )
            self._raise_for_status(response, "tracking")
            data = self._json(response, "tracking")
            packets = data.get("packet_list") or []
            if not packets:
                raise CourierError("Shipment not found at Leopard", error_code="TRACKING_NOT_FOUND", status_code=404, courier=self.code)
            shipment = packets[0]
            return TrackingInfo(
                tracking_id=tracking_id,
                status=normalize_tracking_status(shipment.get("packet_status")),
                current_location=shipment.get("location_name"),
                status_history=shipment.get("packet_history") or [],
                raw=data,
            )

        if self.code == "POSTEX":
            response = await self._request(
                "GET",
                POSTEX_TRACKING_URL.format(tracking_id=tracking_id),
                headers={"token": self.api_key or ""},
            )
            self._raise_for_status(response, "tracking")
            data = self._json(response, "tracking")
            dist = data.get("dist") if isinstance(data.get("dist"), dict) else data
            return TrackingInfo(
                tracking_id=tracking_id,
                status=normalize_tracking_status(dist.get("orderStatus") or dist.get("transactionStatus")),
                current_location=dist.get("currentLocation"),
                status_history=dist.get("trackingHistory") or dist.get("transactionStatusHistory") or [],
                raw=data,
            )

        raise CourierError(f"Unsupported courier: {self.code}", error_code="UNSUPPORTED_COURIER", courier=self.code)

    # ==================== CANCELLATION ====================

    async def cancel(self, tracking_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
        """Cancel a booking at the courier. TCS and Leopard are cancelled locally only."""
        if self.is_mock:
            return {"cancelled": True, "mock": True}

        if self.courier.cancellation_endpoint:
            response = await self._request(
                "POST",
                self.courier.cancellation_endpoint,
                headers=self.build_auth_headers(),
                json={"tracking_number": tracking_id, "reason": reason or ""},
            )
            self._raise_for_status(response, "cancellation")
            return self._json(response, "cancellation") if response.content else {"cancelled": True}

        if self.code == "POSTEX":
            response = await self._request(
                "PUT",
                POSTEX_CANCEL_URL,
                headers={"token": self.api_key or "", "Content-Type": "application/json"},
                json={"trackingNumber": tracking_id},
            )
            self._raise_for_status(response, "cancellation")
            return self._json(response, "cancellation") if response.content else {"cancelled": True}

        return {"cancelled": True, "local_only": True}
