#tests\test_dns.py

"""Test the development TLD DNS responder."""

import socket
import threading

import pytest
from dnslib import QTYPE, RCODE, RR, A, DNSRecord

from orchestration_engine.core.errors import PortInUse
from orchestration_engine.dns.responder import DnsResponder, resolver_file_content


def query(name, qtype="A"):
    return DNSRecord.question(name, qtype)


class FakeUpstream:
    """One-shot UDP server answering every query with a fixed address."""

    def __init__(self, answer="93.184.216.34"):
        self.answer = answer
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self.sock.bind(("127.0.0.1", 0))
        self.sock.settimeout(2.0)
        self.address = self.sock.getsockname()
        self.thread = threading.Thread(target=self._serve, daemon=True)
        self.thread.start()

    def _serve(self):
        try:
            packet, client = self.sock.recvfrom(4096)
        except OSError:
            return
        request = DNSRecord.parse(packet)
        reply = request.reply()
        reply.add_answer(RR(request.q.qname, QTYPE.A, rdata=A(self.answer), ttl=60))
        self.sock.sendto(reply.pack(), client)

    def close(self):
        self.thread.join(timeout=2.0)
        self.sock.close()


class TestAnswers:
    """Test authoritative answers for the TLD."""

    @pytest.fixture
    def responder(self):
        return DnsResponder(tld="test", port=0)

    def test_a_record(self, responder):
        """Test names under the TLD resolve to 127.0.0.1."""
        reply = responder.build_response(query("shop.test"))

        assert reply.header.aa == 1
        assert [str(rr.rdata) for rr in reply.rr] == ["127.0.0.1"]

    def test_aaaa_record(self, responder):
        """Test AAAA queries get ::1."""
        reply = responder.build_response(query("shop.test", "AAAA"))
        assert [str(rr.rdata) for rr in reply.rr] == ["::1"]

    def test_deep_names(self, responder):
        """Test multi-level names are answered too."""
        reply = responder.build_response(query("api.shop.test"))
        assert len(reply.rr) == 1

    def test_other_types_empty(self, responder):
        """Test MX under the TLD gets an empty authoritative answer."""
        reply = responder.build_response(query("shop.test", "MX"))

        assert reply.rr == []
        assert reply.header.rcode == RCODE.NOERROR

    def test_handles(self, responder):
        """Test TLD matching is case-insensitive and suffix-exact."""
        assert responder.handles("Shop.TEST.")
        assert responder.handles("test")
        assert not responder.handles("example.com")
        assert not responder.handles("contest")

    def test_malformed_packet_dropped(self, responder):
        assert responder.handle_packet(b"\x00\x01garbage") is None


class TestForwarding:
    """Test queries outside the TLD go upstream."""

    def test_forwarded_to_upstream(self):
        """Test the upstream answer is relayed unchanged."""
        upstream = FakeUpstream()
        responder = DnsResponder(tld="test", port=0, upstream=upstream.address, upstream_timeout=2.0)
        try:
            raw = responder.handle_packet(query("example.com").pack())
        finally:
            upstream.close()

        reply = DNSRecord.parse(raw)
        assert [str(rr.rdata) for rr in reply.rr] == ["93.184.216.34"]

    def test_upstream_silent_gives_servfail(self):
        """Test an unreachable upstream yields SERVFAIL."""
        silent = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        silent.bind(("127.0.0.1", 0))
        try:
            responder = DnsResponder(
                tld="test", port=0, upstream=silent.getsockname(), upstream_timeout=0.2
            )
            raw = responder.handle_packet(query("example.com").pack())
        finally:
            silent.close()

        assert DNSRecord.parse(raw).header.rcode == RCODE.SERVFAIL


class TestLifecycle:
    """Test the UDP listener."""

    def test_serves_over_udp(self):
        """Test a real UDP round trip against the running responder."""
        responder = DnsResponder(tld="test", port=0, poll_interval=0.1)
        responder.start()
        try:
            status = responder.status()
            assert status.running
            assert status.port != 0

            raw = query("blog.test").send("127.0.0.1", status.port, timeout=2.0)
            reply = DNSRecord.parse(raw)
            assert str(reply.rr[0].rdata) == "127.0.0.1"
        finally:
            responder.stop()

        assert not responder.status().running

    def test_local_answer_not_held_by_slow_upstream(self):
        """Test a TLD query is answered while a forwarded query waits on upstream."""
        silent = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        silent.bind(("127.0.0.1", 0))
        responder = DnsResponder(
            tld="test",
            port=0,
            upstream=silent.getsockname(),
            upstream_timeout=2.0,
            poll_interval=0.1,
        )
        responder.start()
        client = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        client.settimeout(1.0)
        try:
            server = ("127.0.0.1", responder.status().port)
            client.sendto(query("example.com").pack(), server)
            client.sendto(query("blog.test").pack(), server)

            reply = DNSRecord.parse(client.recvfrom(4096)[0])
        finally:
            client.close()
            responder.stop()
            silent.close()

        assert str(reply.q.qname) == "blog.test."
        assert str(reply.rr[0].rdata) == "127.0.0.1"

    def test_port_in_use(self):
        """Test a busy port raises PortInUse instead of crashing."""
        busy = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        busy.bind(("127.0.0.1", 0))
        port = busy.getsockname()[1]
        try:
            responder = DnsResponder(tld="test", port=port)
            with pytest.raises(PortInUse) as exc:
                responder.start()
            assert exc.value.port == port
            assert not responder.status().running
        finally:
            busy.close()

    def test_resolver_file(self):
        """Test the per-TLD resolver file content."""
        assert resolver_file_content(5354) == "nameserver 127.0.0.1\nport 5354\n"
