"""Tests for apk_patcher.core.models."""

from __future__ import annotations

from apk_patcher.core.models import (
    BoundPatch,
    CompatiblePackage,
    Device,
    DeviceStatus,
    MonitorState,
    Patch,
)


class TestPatch:
    def test_identity_prefers_name(self):
        assert Patch(3, "Hide ads").identity == "Hide ads"

    def test_identity_falls_back_to_index(self):
        assert Patch(3, None).identity == "#3"
        assert str(BoundPatch(Patch(3, None))) == "#3"

    def test_universal(self):
        assert Patch(0, "a").is_universal
        assert not Patch(
            0, "a", compatible_packages=(CompatiblePackage("pkg"),)
        ).is_universal


class TestDevice:
    def test_parse_status(self):
        assert DeviceStatus.parse("device") is DeviceStatus.READY
        assert DeviceStatus.parse("unauthorized") is DeviceStatus.UNAUTHORIZED
        assert DeviceStatus.parse("offline") is DeviceStatus.OFFLINE
        assert DeviceStatus.parse("sideload") is DeviceStatus.UNKNOWN

    def test_display_name(self):
        assert Device("abc", DeviceStatus.READY, "Pixel 8").display_name == "Pixel 8"
        assert Device("abc", DeviceStatus.READY, "  ").display_name == "abc"

    def test_display_name_with_status(self):
        ready = Device("abc", DeviceStatus.READY, "Pixel 8", "arm64-v8a")
        assert ready.display_name_with_status == "Pixel 8 (arm64-v8a) (Connected)"
        unauthorized = Device("abc", DeviceStatus.UNAUTHORIZED)
        assert unauthorized.display_name_with_status == (
            "abc (Unauthorized - check device)"
        )

    def test_ready_devices(self):
        ready = Device("a", DeviceStatus.READY)
        state = MonitorState(devices=(ready, Device("b", DeviceStatus.OFFLINE)))
        assert state.ready_devices == (ready,)
