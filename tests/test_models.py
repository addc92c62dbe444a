"""Tests for shared value types: teardown policy, states, endpoints and health reports."""

import httpx
import pytest
from pydantic import ValidationError

from scaffoldkit.exceptions import ErrorCategory, InvalidStateTransitionError, ProbeTimeoutError
from scaffoldkit.models import (
    HealthReport,
    HealthStatus,
    HttpEndpoint,
    InstanceState,
    TcpEndpoint,
    TeardownPolicy,
    can_transition,
)


class TestTeardownPolicy:
    def test_delete_all_keeps_nothing(self):
        policy = TeardownPolicy.DELETE_ALL
        assert not policy.keeps_directory
        assert not policy.keeps_running
        assert not policy.keeps_template_installed

    def test_keep_running_implies_keep_directory(self):
        policy = TeardownPolicy.KEEP_PROJECT_RUNNING
        assert policy.keeps_running
        assert policy.keeps_directory

    def test_flags_combine(self):
        policy = TeardownPolicy.KEEP_PROJECT_DIRECTORY | TeardownPolicy.KEEP_TEMPLATE_INSTALLED
        assert policy.keeps_directory
        assert policy.keeps_template_installed
        assert not policy.keeps_running


class TestStateTransitions:
    @pytest.mark.parametrize(
        "current, requested",
        [
            (InstanceState.CREATED, InstanceState.PATCHED),
            (InstanceState.CREATED, InstanceState.LAUNCHED),
            (InstanceState.PATCHED, InstanceState.LAUNCHED),
            (InstanceState.LAUNCHED, InstanceState.READY),
            (InstanceState.READY, InstanceState.IN_USE),
            (InstanceState.CREATED, InstanceState.TORN_DOWN),
            (InstanceState.LAUNCHED, InstanceState.TORN_DOWN),
            (InstanceState.IN_USE, InstanceState.TORN_DOWN),
        ],
    )
    def test_allowed(self, current, requested):
        assert can_transition(current, requested)

    @pytest.mark.parametrize(
        "current, requested",
        [
            (InstanceState.CREATED, InstanceState.READY),
            (InstanceState.CREATED, InstanceState.IN_USE),
            (InstanceState.LAUNCHED, InstanceState.PATCHED),
            (InstanceState.READY, InstanceState.PATCHED),
            (InstanceState.TORN_DOWN, InstanceState.LAUNCHED),
            (InstanceState.TORN_DOWN, InstanceState.PATCHED),
        ],
    )
    def test_rejected(self, current, requested):
        assert not can_transition(current, requested)

    def test_invalid_transition_error_names_states(self):
        error = InvalidStateTransitionError(InstanceState.TORN_DOWN, InstanceState.LAUNCHED)
        assert "TORN_DOWN" in str(error)
        assert "LAUNCHED" in str(error)
        assert error.category is ErrorCategory.STATE
        assert not error.is_fatal_to_instance()


class TestHttpEndpoint:
    def _response(self, status: int) -> httpx.Response:
        return httpx.Response(status, request=httpx.Request("GET", "http://localhost/"))

    @pytest.mark.parametrize("status, ready", [(200, True), (401, True), (404, True), (500, False), (503, False)])
    def test_default_accepts_any_non_server_error(self, status, ready):
        assert HttpEndpoint("http://localhost/not-exist").is_ready(self._response(status)) is ready

    def test_expected_status_restricts(self):
        endpoint = HttpEndpoint("http://localhost/health", expected_status=frozenset({200}))
        assert endpoint.is_ready(self._response(200))
        assert not endpoint.is_ready(self._response(404))

    def test_predicate_overrides_status_rule(self):
        endpoint = HttpEndpoint("http://localhost/", predicate=lambda response: response.status_code == 503)
        assert endpoint.is_ready(self._response(503))

    def test_describe(self):
        assert HttpEndpoint("http://localhost:5000/").describe() == "GET http://localhost:5000/"


class TestTcpEndpoint:
    def test_connect_only_ignores_payload(self):
        assert TcpEndpoint(42063).is_ready(None)

    def test_read_payload_requires_health_report(self):
        endpoint = TcpEndpoint(42063, read_payload=True)
        assert not endpoint.is_ready("")
        assert not endpoint.is_ready("   ")
        assert not endpoint.is_ready("garbage, not json")
        assert not endpoint.is_ready('{"entries": {}}')
        assert endpoint.is_ready('{"status": "Healthy"}')
        assert endpoint.is_ready('{"status": "Degraded", "entries": {}}')

    def test_predicate_implies_reading(self):
        endpoint = TcpEndpoint(42063, predicate=lambda payload: "Healthy" in payload)
        assert endpoint.reads_payload
        assert not endpoint.is_ready('{"status": "Unhealthy"}')

    @pytest.mark.parametrize("port", [0, -1])
    def test_port_must_be_positive(self, port):
        with pytest.raises(ValueError):
            TcpEndpoint(port)

    def test_describe(self):
        assert TcpEndpoint(42063).describe() == "tcp://127.0.0.1:42063"


class TestHealthReport:
    def test_parse_full_report(self):
        report = HealthReport.parse(
            '{"status": "Healthy", "totalDuration": "00:00:00.01", "entries": {"db": {"status": "Healthy"}}}'
        )
        assert report.status is HealthStatus.HEALTHY
        assert report.is_healthy
        assert report.total_duration == "00:00:00.01"
        assert "db" in report.entries

    @pytest.mark.parametrize("raw, expected", [('"healthy"', HealthStatus.HEALTHY), ("1", HealthStatus.DEGRADED)])
    def test_status_casing_and_ordinal(self, raw, expected):
        assert HealthReport.parse(f'{{"status": {raw}}}').status is expected

    def test_extra_keys_are_kept(self):
        report = HealthReport.parse('{"status": "Unhealthy", "project": "Demo"}')
        assert not report.is_healthy
        assert report.model_extra == {"project": "Demo"}

    def test_invalid_payload_raises(self):
        with pytest.raises(ValidationError):
            HealthReport.parse("not json")


class TestExceptions:
    def test_probe_timeout_carries_diagnostics(self):
        error = ProbeTimeoutError("GET http://localhost/", 5, 10, "ConnectError: refused")
        assert error.attempts == 10
        assert "refused" in str(error)
        assert error.technical_details["timeout"] == 5
        assert error.is_fatal_to_instance()
