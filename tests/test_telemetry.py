from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import pytest

from backend.feedsync.telemetry import TelemetryClient, build_telemetry_client


class _CaptureSink:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def emit(self, *, event_name: str, attributes: Mapping[str, Any]) -> None:
        self.events.append((event_name, dict(attributes)))


def test_telemetry_client_redacts_sensitive_fields() -> None:
    sink = _CaptureSink()
    client = TelemetryClient(enabled=True, sink=sink)

    client.emit(
        "synchronization.pass.start",
        pass_id="pass_123",
        account_ids=["acc_1", "acc_2"],
        note="  spread   over\nlines ",
        api_key="secret",
        refresh_token="secret",
        accounts=3,
    )

    assert len(sink.events) == 1
    event_name, attributes = sink.events[0]
    assert event_name == "synchronization.pass.start"
    assert attributes["pass_id"] == "pass_123"
    assert attributes["account_ids"] == 2
    assert attributes["note"] == "spread over lines"
    assert attributes["accounts"] == 3
    assert attributes["api_key"] == "[redacted]"
    assert attributes["refresh_token"] == "[redacted]"


def test_long_strings_are_truncated() -> None:
    sink = _CaptureSink()
    client = TelemetryClient(enabled=True, sink=sink)

    client.emit("videos.fetch.error", message="x" * 500)

    message = sink.events[0][1]["message"]
    assert message.endswith("...")
    assert len(message) == 163


def test_disabled_telemetry_client_does_not_emit() -> None:
    sink = _CaptureSink()
    client = TelemetryClient(enabled=False, sink=sink)

    client.emit("subscriptions.fetch.start", account_id="acc_1")
    assert sink.events == []


def test_operation_reports_results_on_finish() -> None:
    sink = _CaptureSink()
    client = TelemetryClient(enabled=True, sink=sink)

    with client.operation("videos.fetch", playlists=2) as results:
        results["videos_added"] = 5

    assert [name for name, _ in sink.events] == ["videos.fetch.start", "videos.fetch.finish"]
    finish = sink.events[1][1]
    assert finish["playlists"] == 2
    assert finish["videos_added"] == 5
    assert isinstance(finish["duration_ms"], int)


def test_operation_reports_errors_and_reraises() -> None:
    sink = _CaptureSink()
    client = TelemetryClient(enabled=True, sink=sink)

    with pytest.raises(RuntimeError):
        with client.operation("subscriptions.fetch", account_id="acc_1"):
            raise RuntimeError("boom")

    assert [name for name, _ in sink.events] == [
        "subscriptions.fetch.start",
        "subscriptions.fetch.error",
    ]
    assert sink.events[1][1]["error_type"] == "RuntimeError"
    assert sink.events[1][1]["account_id"] == "acc_1"


def test_build_telemetry_client_none_sink_is_disabled() -> None:
    client = build_telemetry_client(enabled=True, sink="none")
    assert client.enabled is False


def test_build_telemetry_client_log_sink_is_enabled() -> None:
    assert build_telemetry_client(enabled=True, sink="log").enabled is True
    assert build_telemetry_client(enabled=False, sink="log").enabled is False
