"""Tests for snapshot models and gateway payload normalization."""

import math

import pytest
from pydantic import ValidationError

from app.system.metrics.models import (
    DiskUsage,
    SnapshotSource,
    SystemSnapshot,
    TokenMetrics,
    TokenUsageRequest,
    normalize_snapshot_fields,
)
from conftest import make_snapshot


class TestSystemSnapshot:
    def test_json_uses_camel_case(self):
        snap = make_snapshot(1_700_000_000_000, disk_usage=DiskUsage(used_bytes=5, total_bytes=10))
        data = snap.to_json()
        assert data["timestamp"] == 1_700_000_000_000
        assert data["cpuUsagePercent"] == 10.0
        assert data["memoryUsedBytes"] == 1_000
        assert data["memoryTotalBytes"] == 8_000
        assert data["uptimeSeconds"] == 60.0
        assert data["processCount"] == 1
        assert data["diskUsage"] == {"usedBytes": 5, "totalBytes": 10}
        assert data["source"] == "local"
        assert data["degraded"] is False

    def test_round_trips_from_json_shape(self):
        snap = make_snapshot(42)
        assert SystemSnapshot.model_validate(snap.to_json()) == snap

    def test_memory_used_cannot_exceed_total(self):
        with pytest.raises(ValidationError):
            make_snapshot(1, memory_used_bytes=9_000, memory_total_bytes=8_000)

    def test_disk_used_cannot_exceed_total(self):
        with pytest.raises(ValidationError):
            DiskUsage(used_bytes=11, total_bytes=10)

    @pytest.mark.parametrize("cpu", [-1.0, 100.1, math.nan, math.inf])
    def test_cpu_must_be_finite_percentage(self, cpu):
        with pytest.raises(ValidationError):
            make_snapshot(1, cpu_usage_percent=cpu)

    def test_negative_fields_rejected(self):
        with pytest.raises(ValidationError):
            make_snapshot(1, uptime_seconds=-5)
        with pytest.raises(ValidationError):
            make_snapshot(1, process_count=-1)

    def test_frozen(self):
        snap = make_snapshot(1)
        with pytest.raises(ValidationError):
            snap.cpu_usage_percent = 50.0


class TestNormalizeSnapshotFields:
    def test_camel_case_payload(self):
        fields = normalize_snapshot_fields(
            {
                "cpuUsagePercent": 33.3,
                "memoryUsedBytes": 100,
                "memoryTotalBytes": 400,
                "uptimeSeconds": 12,
                "processCount": 7,
                "diskUsage": {"usedBytes": 1, "totalBytes": 2},
            }
        )
        assert fields["cpu_usage_percent"] == 33.3
        assert fields["memory_used_bytes"] == 100
        assert fields["memory_total_bytes"] == 400
        assert fields["process_count"] == 7
        assert fields["disk_usage"] == DiskUsage(used_bytes=1, total_bytes=2)

    def test_snake_case_gateway_payload(self):
        fields = normalize_snapshot_fields(
            {"cpu_usage": 5, "memory_used": 10, "memory_total": 20, "uptime": 30, "processes": 4}
        )
        assert fields["cpu_usage_percent"] == 5.0
        assert fields["memory_used_bytes"] == 10
        assert fields["memory_total_bytes"] == 20
        assert fields["uptime_seconds"] == 30.0
        assert fields["process_count"] == 4

    def test_nested_payload_with_usage_percent(self):
        fields = normalize_snapshot_fields(
            {"cpu": {"usage": 20.5, "cores": 8}, "memory": {"total": 1000, "usage_percent": 25}, "uptime": 9}
        )
        assert fields["cpu_usage_percent"] == 20.5
        assert fields["memory_total_bytes"] == 1000
        assert fields["memory_used_bytes"] == 250
        assert fields["process_count"] is None

    def test_out_of_range_values_are_clamped(self):
        fields = normalize_snapshot_fields(
            {
                "cpuUsagePercent": 250,
                "memoryUsedBytes": 5_000,
                "memoryTotalBytes": 1_000,
                "uptimeSeconds": -3,
                "processCount": -2,
            }
        )
        assert fields["cpu_usage_percent"] == 100.0
        assert fields["memory_used_bytes"] == 1_000
        assert fields["uptime_seconds"] == 0.0
        assert fields["process_count"] == 0
        snap = SystemSnapshot(timestamp=1, source=SnapshotSource.GATEWAY, **fields)
        assert snap.memory_used_bytes <= snap.memory_total_bytes

    def test_non_numeric_values_default_to_zero(self):
        fields = normalize_snapshot_fields(
            {"cpuUsagePercent": "NaN", "memoryTotalBytes": "lots", "uptimeSeconds": True, "processCount": 3}
        )
        assert fields["cpu_usage_percent"] == 0.0
        assert fields["memory_total_bytes"] == 0
        assert fields["memory_used_bytes"] == 0
        assert fields["uptime_seconds"] == 0.0

    def test_rejects_non_object(self):
        with pytest.raises(ValueError):
            normalize_snapshot_fields(["not", "a", "dict"])

    def test_rejects_payload_without_fields(self):
        with pytest.raises(ValueError):
            normalize_snapshot_fields({"status": "ok"})

    def test_integers_beyond_float_range_default_to_zero(self):
        huge = 10**400
        fields = normalize_snapshot_fields(
            {"cpuUsagePercent": 5, "memoryTotalBytes": huge, "memoryUsedBytes": 1, "processCount": huge}
        )
        assert fields["cpu_usage_percent"] == 5.0
        assert fields["memory_total_bytes"] == 0
        assert fields["memory_used_bytes"] == 0
        assert fields["process_count"] is None

    def test_cpu_cores_and_model_are_kept(self):
        fields = normalize_snapshot_fields(
            {"cpu": {"usage": 10, "cores": 8, "model": " AMD Ryzen 7 "}, "memory": {"total": 10, "used": 5}}
        )
        assert fields["cpu_cores"] == 8
        assert fields["cpu_model"] == "AMD Ryzen 7"
        snap = SystemSnapshot(timestamp=1, **fields)
        assert snap.to_json()["cpuCores"] == 8
        assert snap.to_json()["cpuModel"] == "AMD Ryzen 7"

    def test_blank_or_non_string_model_is_dropped(self):
        fields = normalize_snapshot_fields({"cpuUsagePercent": 1, "cpuModel": "  ", "cpu_model": 42})
        assert "cpu_model" not in fields
        assert "cpu_cores" not in fields


class TestTokenModels:
    def test_usage_request_rejects_negative_counts(self):
        with pytest.raises(ValidationError):
            TokenUsageRequest(total=-1)
        with pytest.raises(ValidationError):
            TokenUsageRequest(total=1, input=-5)

    def test_token_metrics_json_shape(self):
        data = TokenMetrics(total_processed=3, by_model={"gpt": 3}, timestamp=9).model_dump(
            mode="json", by_alias=True
        )
        assert data == {
            "totalProcessed": 3,
            "inputTokens": 0,
            "outputTokens": 0,
            "byModel": {"gpt": 3},
            "timestamp": 9,
        }
