# orchestration_engine/dns/responder.py
"""
DNS Responder - answers the development TLD with loopback, forwards the rest.

Listens on a fixed local UDP port. The system is pointed at it through a
per-TLD resolver file, so system-wide DNS settings stay untouched.
"""

import errno
import logging
import socket
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Optional, Tuple

from dnslib import AAAA, QTYPE, RCODE, RR, A, DNSError, DNSRecord

from orchestration_engine.core.errors import PortInUse

logger = logging.getLogger(__name__)

LOOPBACK_V4 = "127.0.0.1"
LOOPBACK_V6 = "::1"
ANSWER_TTL = 300
MAX_PACKET = 4096
FORWARD_WORKERS = 4


@dataclass
class DnsStatus:
    running: bool
    port: int
    tld: str
    address: str = LOOPBACK_V4


def resolver_file_content(port: int, address: str = LOOPBACK_V4) -> str:
    """Content of /etc/resolver/<tld> pointing the TLD at this responder."""
    return f"nameserver {address}\nport {port}\n"


class DnsResponder:
    def __init__(
        self,
        tld: str,
        port: int,
        address: str = LOOPBACK_V4,
        upstream: Tuple[str, int] = ("1.1.1.1", 53),
        upstream_timeout: float = 2.0,
        poll_interval: float = 0.5,
        forward_workers: int = FORWARD_WORKERS,
    ):
        self.tld = tld.strip(".").lower()
        self.port = port
        self.address = address
        self.upstream = upstream
        self.upstream_timeout = upstream_timeout
        self.poll_interval = poll_interval
        self.forward_workers = forward_workers

        self._sock: Optional[socket.socket] = None
        self._thread: Optional[threading.Thread] = None
        self._forwarders: Optional[ThreadPoolExecutor] = None
        self._stop_event = threading.Event()
        self._lock = threading.Lock()

    # ============================================
    # LIFECYCLE
    # ============================================

    def start(self) -> None:
        with self._lock:
            if self._thread and self._thread.is_alive():
                return

            sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
            try:
                sock.bind((self.address, self.port))
            except OSError as e:
                sock.close()
                if e.errno in (errno.EADDRINUSE, errno.EACCES):
                    raise PortInUse(self.port, self.address) from e
                raise

            # Port 0 asks the OS for a free port
            self.port = sock.getsockname()[1]
            sock.settimeout(self.poll_interval)

            self._sock = sock
            # Upstream waits run here so local answers never queue behind them
            self._forwarders = ThreadPoolExecutor(
                max_workers=self.forward_workers,
                thread_name_prefix=f"dns-{self.port}-forward",
            )
            self._stop_event.clear()
            self._thread = threading.Thread(
                target=self._serve,
                name=f"dns-{self.port}",
                daemon=True,
            )
            self._thread.start()

        logger.info(f"[dns] ✅ Listening on {self.address}:{self.port} for *.{self.tld}")

    def stop(self, timeout: float = 5.0) -> None:
        with self._lock:
            self._stop_event.set()
            if self._thread:
                self._thread.join(timeout=timeout)
                self._thread = None
            if self._forwarders:
                self._forwarders.shutdown(wait=False, cancel_futures=True)
                self._forwarders = None
            if self._sock:
                self._sock.close()
                self._sock = None

        logger.info("[dns] Stopped")

    def restart(self) -> None:
        self.stop()
        self.start()

    def status(self) -> DnsStatus:
        running = self._thread is not None and self._thread.is_alive()
        return DnsStatus(running=running, port=self.port, tld=self.tld, address=self.address)

    # ============================================
    # QUERY HANDLING
    # ============================================

    def _serve(self) -> None:
        sock = self._sock
        forwarders = self._forwarders
        while not self._stop_event.is_set():
            try:
                packet, client = sock.recvfrom(MAX_PACKET)
            except socket.timeout:
                continue
            except OSError as e:
                if self._stop_event.is_set():
                    break
                logger.error(f"[dns] Receive error: {e}")
                continue

            request = self.parse(packet)
            if request is None:
                continue

            if not self.handles(str(request.q.qname)):
                forwarders.submit(self._relay, sock, packet, request, client)
                continue

            try:
                response = self.build_response(request).pack()
            except Exception as e:
                logger.error(f"[dns] Error handling query from {client}: {e}", exc_info=True)
                continue

            self._reply(sock, response, client)

    def _relay(self, sock: socket.socket, packet: bytes, request: DNSRecord, client) -> None:
        try:
            response = self.forward(packet, request)
        except Exception as e:
            logger.error(f"[dns] Error forwarding query from {client}: {e}", exc_info=True)
            return
        self._reply(sock, response, client)

    def _reply(self, sock: socket.socket, response: bytes, client) -> None:
        try:
            sock.sendto(response, client)
        except OSError as e:
            logger.warning(f"[dns] Failed to reply to {client}: {e}")

    def handles(self, qname: str) -> bool:
        name = qname.lower().rstrip(".")
        return name == self.tld or name.endswith(f".{self.tld}")

    def parse(self, packet: bytes) -> Optional[DNSRecord]:
        """The query, or None for unparseable input or no question."""
        try:
            request = DNSRecord.parse(packet)
        except DNSError as e:
            logger.debug(f"[dns] Dropping malformed packet: {e}")
            return None

        if not request.questions:
            return None
        return request

    def handle_packet(self, packet: bytes) -> Optional[bytes]:
        """Answer or forward one query in the caller's thread."""
        request = self.parse(packet)
        if request is None:
            return None

        if self.handles(str(request.q.qname)):
            return self.build_response(request).pack()

        return self.forward(packet, request)

    def build_response(self, request: DNSRecord) -> DNSRecord:
        """Authoritative answer for a name under the TLD."""
        reply = request.reply()
        reply.header.aa = 1
        qname = request.q.qname
        qtype = request.q.qtype

        if qtype in (QTYPE.A, QTYPE.ANY):
            reply.add_answer(RR(qname, QTYPE.A, rdata=A(LOOPBACK_V4), ttl=ANSWER_TTL))
        if qtype in (QTYPE.AAAA, QTYPE.ANY):
            reply.add_answer(RR(qname, QTYPE.AAAA, rdata=AAAA(LOOPBACK_V6), ttl=ANSWER_TTL))

        logger.debug(f"[dns] {qname} {QTYPE[qtype]} -> {len(reply.rr)} answer(s)")
        return reply

    def forward(self, packet: bytes, request: DNSRecord) -> bytes:
        """Relay the raw query upstream; SERVFAIL when upstream does not answer."""
        upstream = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        upstream.settimeout(self.upstream_timeout)
        try:
            upstream.sendto(packet, self.upstream)
            data, _ = upstream.recvfrom(MAX_PACKET)
            return data
        except OSError as e:
            logger.warning(f"[dns] Upstream {self.upstream[0]} failed for {request.q.qname}: {e}")
            reply = request.reply()
            reply.header.rcode = RCODE.SERVFAIL
            return reply.pack()
        finally:
            upstream.close()
