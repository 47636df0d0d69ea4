"""
Tests for Shiprocket error translation.
"""
import httpx
import pytest

from shiprocket_fulfillment.core.exceptions import (
    ShiprocketError,
    ShiprocketInvalidDataError,
    ShiprocketNotFoundError,
    ShiprocketRateLimitedError,
    ShiprocketTimeoutError,
    ShiprocketUnauthorizedError,
    ShiprocketUnavailableError,
)
from shiprocket_fulfillment.services.shiprocket_errors import (
    extract_error_message,
    format_validation_errors,
    translate_http_error,
    translate_response,
    translate_transport_error,
)


class TestValidationErrorFormatting:
    """Test carrier field-error aggregation."""

    def test_all_fields_in_one_message(self):
        message = format_validation_errors({
            "billing_phone": ["is required"],
            "shipping_pincode": ["is invalid", "is too short"],
        })

        assert message == (
            "Validation failed: billing_phone: is required; "
            "shipping_pincode: is invalid, is too short"
        )

    def test_non_list_messages(self):
        assert format_validation_errors({"weight": "must be positive"}) == "Validation failed: weight: must be positive"

    def test_empty_errors(self):
        assert format_validation_errors({}) is None
        assert format_validation_errors(None) is None

    def test_message_preferred_when_no_field_errors(self):
        assert extract_error_message({"message": "Order not found"}) == "Order not found"
        assert extract_error_message({}, default="fallback") == "fallback"


class TestHttpErrorTranslation:
    """Test status code to error kind mapping."""

    @pytest.mark.parametrize("status,error_type", [
        (400, ShiprocketInvalidDataError),
        (401, ShiprocketUnauthorizedError),
        (404, ShiprocketNotFoundError),
        (405, ShiprocketInvalidDataError),
        (422, ShiprocketInvalidDataError),
        (429, ShiprocketRateLimitedError),
        (500, ShiprocketUnavailableError),
        (503, ShiprocketUnavailableError),
    ])
    def test_status_mapping(self, status, error_type):
        error = translate_http_error(status, {"message": "boom"}, "create_order")

        assert type(error) is error_type
        assert error.carrier_status == status
        assert error.details["operation"] == "create_order"

    def test_field_errors_aggregated_for_422(self):
        error = translate_http_error(
            422,
            {"message": "The given data was invalid.", "errors": {"billing_email": ["is invalid"]}},
            "create_order",
        )

        assert error.message == "[create_order] Validation failed: billing_email: is invalid"
        assert error.carrier_payload["errors"] == {"billing_email": ["is invalid"]}

    def test_retryable_kinds(self):
        assert translate_http_error(429, {}).retryable
        assert translate_http_error(502, {}).retryable
        assert not translate_http_error(400, {}).retryable
        assert not translate_http_error(401, {}).retryable

    def test_translate_response_reads_text_body(self):
        response = httpx.Response(500, text="<html>Bad Gateway</html>")

        error = translate_response(response, "track_awb")

        assert isinstance(error, ShiprocketUnavailableError)
        assert error.carrier_payload == "<html>Bad Gateway</html>"


class TestTransportErrorTranslation:
    """Test httpx transport failure mapping."""

    def test_timeout_is_distinct_kind(self):
        request = httpx.Request("GET", "https://shiprocket.test/")
        error = translate_transport_error(httpx.ReadTimeout("timed out", request=request), "serviceability")

        assert isinstance(error, ShiprocketTimeoutError)
        assert isinstance(error, ShiprocketUnavailableError)
        assert error.retryable
        assert error.status_code == 504
        assert error.code == "SHIPROCKET_TIMEOUT"

    def test_connect_error(self):
        request = httpx.Request("GET", "https://shiprocket.test/")
        error = translate_transport_error(httpx.ConnectError("refused", request=request))

        assert type(error) is ShiprocketUnavailableError
        assert error.code == "SHIPROCKET_CONNECT_ERROR"

    def test_other_network_error(self):
        request = httpx.Request("GET", "https://shiprocket.test/")
        error = translate_transport_error(httpx.RemoteProtocolError("reset", request=request), "track_awb")

        assert error.code == "NETWORK_ERROR"
        assert error.message.startswith("[track_awb] Network error")


class TestExceptionSerialization:
    """Test ShiprocketError helpers."""

    def test_to_dict(self):
        error = ShiprocketInvalidDataError("Missing height", field="height")

        assert error.to_dict() == {
            "error_type": "ShiprocketInvalidDataError",
            "code": "SHIPROCKET_INVALID_DATA",
            "message": "Missing height",
            "retryable": False,
            "details": {"field": "height"},
        }

    def test_defaults(self):
        error = ShiprocketError("generic")

        assert error.code == "SHIPROCKET_ERROR"
        assert error.status_code == 500
        assert error.carrier_status is None
