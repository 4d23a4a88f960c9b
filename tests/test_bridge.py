#tests\test_bridge.py

"""Test the privileged helper client."""

import json
import threading

import httpx
import pytest

from orchestration_engine.core.errors import (
    HelperBusy,
    HelperRequestFailed,
    HelperTimeout,
    HelperUnavailable,
)
from orchestration_engine.helper.protocol import (
    AckPayload,
    CertInfoPayload,
    FailureReason,
    HelperResponse,
    PongPayload,
    TrustPayload,
)

from conftest import mock_bridge


def reply(response: HelperResponse) -> httpx.Response:
    return httpx.Response(200, content=response.model_dump_json())


def kind_of(request: httpx.Request) -> str:
    return json.loads(request.content)["request"]["kind"]


class TestTransport:
    """Test connection handling and failure mapping."""

    def test_missing_socket(self, bridge):
        """Test no socket means the helper is not installed."""
        with pytest.raises(HelperUnavailable):
            bridge.ping()
        assert not bridge.is_available()

    def test_envelope_shape(self):
        """Test requests are posted with the protocol version."""
        seen = []

        def handler(request):
            seen.append(json.loads(request.content))
            return reply(HelperResponse.success(PongPayload()))

        mock_bridge(handler).ping()

        assert seen == [{"version": 1, "request": {"kind": "ping"}}]

    def test_failure_reason_surfaces(self):
        def handler(request):
            return reply(HelperResponse.failure(FailureReason.PATH_NOT_ALLOWED, "nope"))

        with pytest.raises(HelperRequestFailed) as exc:
            mock_bridge(handler).trust_ca("/etc/passwd")

        assert exc.value.reason == "path_not_allowed"
        assert exc.value.message == "nope"

    def test_validation_error_is_invalid_request(self):
        bridge = mock_bridge(lambda request: httpx.Response(422, json={"detail": []}))

        with pytest.raises(HelperRequestFailed) as exc:
            bridge.ping()

        assert exc.value.reason == "invalid_request"

    def test_server_error_is_command_failed(self):
        bridge = mock_bridge(lambda request: httpx.Response(500, text="boom"))

        with pytest.raises(HelperRequestFailed) as exc:
            bridge.ping()

        assert exc.value.reason == "command_failed"

    def test_unexpected_payload_type(self):
        """Test a payload of the wrong kind is rejected."""
        bridge = mock_bridge(lambda request: reply(HelperResponse.success(AckPayload())))

        with pytest.raises(HelperRequestFailed) as exc:
            bridge.is_ca_trusted("/tmp/root.crt")

        assert exc.value.reason == "invalid_response"

    def test_garbage_body(self):
        bridge = mock_bridge(lambda request: httpx.Response(200, text="not json"))

        with pytest.raises(HelperRequestFailed) as exc:
            bridge.ping()

        assert exc.value.reason == "invalid_response"


class TestRetry:
    """Test the single retry on timeout."""

    def test_timeout_retried_once(self):
        """Test an idempotent request succeeds on the second attempt."""
        attempts = []

        def handler(request):
            attempts.append(kind_of(request))
            if len(attempts) == 1:
                raise httpx.ReadTimeout("slow", request=request)
            return reply(HelperResponse.success(TrustPayload(trusted=True)))

        assert mock_bridge(handler).is_ca_trusted("/tmp/root.crt") is True
        assert attempts == ["is_caddy_ca_trusted", "is_caddy_ca_trusted"]

    def test_timeout_twice(self):
        attempts = []

        def handler(request):
            attempts.append(1)
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(HelperTimeout):
            mock_bridge(handler).ping()

        assert len(attempts) == 2

    def test_restart_not_retried(self):
        """Test a non-idempotent request is sent exactly once."""
        attempts = []

        def handler(request):
            attempts.append(kind_of(request))
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(HelperTimeout):
            mock_bridge(handler).restart_daemon("dev.orchestrator.proxy")

        assert attempts == ["restart_daemon"]

    def test_connect_error_is_unavailable(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(HelperUnavailable):
            mock_bridge(handler).ping()


class TestQueue:
    """Test the bounded request queue."""

    def test_busy_when_queue_full(self):
        """Test callers beyond the queue get HelperBusy instead of waiting."""
        entered = threading.Event()
        release = threading.Event()

        def handler(request):
            entered.set()
            release.wait(5)
            return reply(HelperResponse.success(PongPayload()))

        bridge = mock_bridge(handler, queue_size=0)
        worker = threading.Thread(target=bridge.ping)
        worker.start()
        try:
            assert entered.wait(5)
            with pytest.raises(HelperBusy):
                bridge.ping()
        finally:
            release.set()
            worker.join(5)


class TestTypedOperations:
    """Test payload unwrapping for typed calls."""

    def test_get_cert_info(self):
        def handler(request):
            payload = CertInfoPayload(exists=True, name="Local CA")
            return reply(HelperResponse.success(payload))

        info = mock_bridge(handler).get_cert_info("/tmp/root.crt")

        assert info.exists
        assert info.name == "Local CA"
        assert info.to_wire() == "exists|Local CA|"

    def test_ack_message(self):
        def handler(request):
            return reply(HelperResponse.success(AckPayload(message="Resolver installed for .test")))

        assert mock_bridge(handler).install_resolver("test", 5354) == "Resolver installed for .test"

    def test_is_available(self):
        bridge = mock_bridge(lambda request: reply(HelperResponse.success(PongPayload())))
        assert bridge.is_available()
