"""Tests de transformación y validación del payload del dispositivo.

Ejecutar:
    pytest tests/test_payload_transform.py -v
"""

import math
from datetime import datetime, timedelta, timezone

import pytest

from airq_ingest.core.domain import TelemetryReading
from airq_ingest.core.transform import TransformFailure, resolve_observed_at, transform_device_payload
from airq_ingest.core.validation import validate_reading
from airq_ingest.errors import RejectReason

from conftest import SENSOR_ID, device_payload

RECEIVED_AT = datetime(2024, 6, 3, 16, 5, 0, tzinfo=timezone.utc)
EPOCH_SECONDS = 1717430400


# =============================================================================
# TIMESTAMP
# =============================================================================

class TestResolveObservedAt:
    """Interpretación de ``ts`` por magnitud."""

    def test_relative_counter_uses_ingest_clock(self):
        assert resolve_observed_at(49, received_at=RECEIVED_AT) == RECEIVED_AT

    def test_epoch_seconds(self):
        expected = datetime.fromtimestamp(EPOCH_SECONDS, tz=timezone.utc)
        assert resolve_observed_at(EPOCH_SECONDS, received_at=RECEIVED_AT) == expected

    def test_epoch_milliseconds(self):
        result = resolve_observed_at(EPOCH_SECONDS * 1000 + 123, received_at=RECEIVED_AT)
        assert result == datetime.fromtimestamp(EPOCH_SECONDS, tz=timezone.utc) + timedelta(milliseconds=123)

    def test_seconds_and_milliseconds_agree(self):
        a = resolve_observed_at(EPOCH_SECONDS, received_at=RECEIVED_AT)
        b = resolve_observed_at(EPOCH_SECONDS * 1000, received_at=RECEIVED_AT)
        assert a == b

    def test_numeric_string(self):
        result = resolve_observed_at(str(EPOCH_SECONDS), received_at=RECEIVED_AT)
        assert result == datetime.fromtimestamp(EPOCH_SECONDS, tz=timezone.utc)

    def test_iso_string(self):
        result = resolve_observed_at("2024-06-03T16:00:00Z", received_at=RECEIVED_AT)
        assert result == datetime(2024, 6, 3, 16, 0, tzinfo=timezone.utc)

    def test_millisecond_counter_uses_ingest_clock(self):
        # Entre 1e10 y 1e12: contador en ms, no un epoch plausible
        assert resolve_observed_at(50_000_000_000, received_at=RECEIVED_AT) == RECEIVED_AT

    @pytest.mark.parametrize("value", [None, True, -5, "ayer", float("nan"), float("inf"), {"t": 1}, 10**400])
    def test_invalid_values(self, value):
        result = resolve_observed_at(value, received_at=RECEIVED_AT)
        assert isinstance(result, TransformFailure)
        assert result.reason == RejectReason.INVALID_TIMESTAMP
        assert result.field == "ts"


# =============================================================================
# TRANSFORMACIÓN
# =============================================================================

class TestTransformDevicePayload:

    def test_full_payload_maps_every_channel(self):
        reading = transform_device_payload(device_payload(EPOCH_SECONDS), SENSOR_ID, received_at=RECEIVED_AT)

        assert isinstance(reading, TelemetryReading)
        assert reading.sensor_id == SENSOR_ID
        assert reading.pm1_0 == 3.0
        assert reading.pm2_5 == 7.5
        assert reading.pm10 == 11.0
        assert reading.o3_raw == 0.41
        assert reading.o3_corrige == 12.0
        assert reading.no2_voltage_v == 0.32
        assert reading.no2_ppb == 18.0
        assert reading.voc_voltage_v == 0.9
        assert reading.co_voltage_v == 0.4
        assert reading.co_ppb == 210.0
        assert reading.temperature == 21.3
        assert reading.humidity == 48.0
        assert reading.pressure == 1012.0

    def test_sensor_id_comes_from_topic_not_payload(self):
        payload = device_payload(EPOCH_SECONDS, sensorId="OTRO")
        reading = transform_device_payload(payload, SENSOR_ID, received_at=RECEIVED_AT)
        assert reading.sensor_id == SENSOR_ID

    def test_relative_ts_is_replaced(self):
        reading = transform_device_payload(device_payload(49), SENSOR_ID, received_at=RECEIVED_AT)
        assert reading.observed_at == RECEIVED_AT

    def test_missing_gas_channels_default_to_zero(self):
        payload = {"ts": EPOCH_SECONDS, "PM1": 1, "PM25": 2, "PM10": 3}
        reading = transform_device_payload(payload, SENSOR_ID, received_at=RECEIVED_AT)

        assert reading.co_ppb == 0.0
        assert reading.no2_ppb == 0.0
        assert reading.temperature is None
        assert reading.pressure is None

    def test_empty_string_channel_defaults_to_zero(self):
        reading = transform_device_payload(device_payload(EPOCH_SECONDS, CO=""), SENSOR_ID, received_at=RECEIVED_AT)
        assert reading.co_ppb == 0.0

    def test_numeric_strings_are_coerced(self):
        reading = transform_device_payload(device_payload(EPOCH_SECONDS, PM25="8.25"), SENSOR_ID, received_at=RECEIVED_AT)
        assert reading.pm2_5 == 8.25

    @pytest.mark.parametrize("key", ["ts", "PM1", "PM25", "PM10"])
    def test_missing_required_key(self, key):
        payload = device_payload(EPOCH_SECONDS)
        del payload[key]
        result = transform_device_payload(payload, SENSOR_ID, received_at=RECEIVED_AT)

        assert isinstance(result, TransformFailure)
        assert result.reason == RejectReason.MISSING_FIELD
        assert result.field == key

    @pytest.mark.parametrize("value", [True, "alto", [1, 2], {"v": 1}, 10**400])
    def test_malformed_channel(self, value):
        result = transform_device_payload(device_payload(EPOCH_SECONDS, NO2=value), SENSOR_ID, received_at=RECEIVED_AT)

        assert isinstance(result, TransformFailure)
        assert result.reason == RejectReason.MALFORMED_FIELD
        assert result.field == "NO2"

    def test_non_object_payload(self):
        result = transform_device_payload([1, 2, 3], SENSOR_ID, received_at=RECEIVED_AT)
        assert result.reason == RejectReason.INVALID_PAYLOAD

    def test_raw_payload_is_kept(self):
        raw = '{"ts":49,"PM1":1,"PM25":2,"PM10":3}'
        reading = transform_device_payload(
            {"ts": 49, "PM1": 1, "PM25": 2, "PM10": 3},
            SENSOR_ID,
            received_at=RECEIVED_AT,
            raw_payload=raw,
        )
        assert reading.raw_payload == raw

    def test_canonical_bytes_are_deterministic(self):
        a = transform_device_payload(device_payload(EPOCH_SECONDS), SENSOR_ID, received_at=RECEIVED_AT, raw_payload="x")
        b = transform_device_payload(
            dict(reversed(list(device_payload(EPOCH_SECONDS).items()))),
            SENSOR_ID,
            received_at=RECEIVED_AT,
            raw_payload="x",
        )
        assert a.canonical_bytes() == b.canonical_bytes()


# =============================================================================
# VALIDACIÓN
# =============================================================================

def _reading(**overrides) -> TelemetryReading:
    reading = transform_device_payload(device_payload(EPOCH_SECONDS), SENSOR_ID, received_at=RECEIVED_AT)
    values = {**reading.__dict__, **overrides}
    return TelemetryReading(**values)


class TestValidateReading:

    def test_valid_reading(self):
        assert validate_reading(_reading(), now=RECEIVED_AT).valid is True

    def test_negative_channel_out_of_range(self):
        result = validate_reading(_reading(pm10=-1.0), now=RECEIVED_AT)
        assert result.valid is False
        assert result.reason == RejectReason.OUT_OF_RANGE
        assert result.field == "pm10"

    def test_non_finite_channel_out_of_range(self):
        result = validate_reading(_reading(co_ppb=math.inf), now=RECEIVED_AT)
        assert result.reason == RejectReason.OUT_OF_RANGE

    def test_negative_temperature_is_valid(self):
        assert validate_reading(_reading(temperature=-12.5), now=RECEIVED_AT).valid is True

    def test_nan_environmental_rejected(self):
        result = validate_reading(_reading(humidity=math.nan), now=RECEIVED_AT)
        assert result.reason == RejectReason.OUT_OF_RANGE
        assert result.field == "humidity"

    def test_future_reading_beyond_skew(self):
        future = RECEIVED_AT + timedelta(minutes=10)
        result = validate_reading(_reading(observed_at=future), now=RECEIVED_AT)

        assert result.valid is False
        assert result.reason == RejectReason.INVALID_TIMESTAMP

    def test_future_within_skew_is_accepted(self):
        soon = RECEIVED_AT + timedelta(minutes=2)
        assert validate_reading(_reading(observed_at=soon), now=RECEIVED_AT).valid is True

    def test_skew_is_configurable(self):
        soon = RECEIVED_AT + timedelta(minutes=2)
        result = validate_reading(_reading(observed_at=soon), now=RECEIVED_AT, max_future_skew=timedelta(seconds=30))
        assert result.valid is False
