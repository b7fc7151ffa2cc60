"""
UDP transport for hosts that poll over the network.

A background thread snapshots the latest detections at a fixed rate and sends
them as one JSON datagram to the host, e.g. a Godot scene listening with
``PacketPeerUDP``.
"""

import json
import logging
import socket
import threading
import time
from typing import Callable, Dict, List, Optional

LOGGER = logging.getLogger(__name__)

# IPv4 UDP payloads are capped at 65507 bytes.
MAX_DATAGRAM_BYTES = 65000


def encode_detections(detections: List[Dict], sequence: int, timestamp: Optional[float] = None) -> bytes:
    """Serialize a detection snapshot to the wire format."""
    payload = {
        "timestamp": time.time() if timestamp is None else timestamp,
        "sequence": sequence,
        "detections": [
            {
                "id": d["id"],
                "rvec": d["rvec"],
                "tvec": d["tvec"],
                "corners": d["corners"],
                "pose_valid": d.get("pose_valid", False),
            }
            for d in detections
        ],
    }
    return json.dumps(payload, separators=(",", ":")).encode("utf-8")


class DetectionPublisher:
    """Sends detection snapshots to ``host:port`` over UDP."""

    def __init__(
        self,
        snapshot: Callable[[], List[Dict]],
        host: str = "127.0.0.1",
        port: int = 4242,
        rate_hz: float = 30.0,
    ):
        if rate_hz <= 0:
            raise ValueError(f"Publish rate must be positive, got {rate_hz}")
        self.snapshot = snapshot
        self.address = (host, port)
        self.interval = 1.0 / rate_hz

        self.sequence = 0
        self.send_errors = 0

        self._sock: Optional[socket.socket] = None
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    @classmethod
    def from_config(cls, snapshot: Callable[[], List[Dict]], config: Dict) -> "DetectionPublisher":
        return cls(
            snapshot,
            host=config.get("host", "127.0.0.1"),
            port=config.get("port", 4242),
            rate_hz=config.get("rate_hz", 30.0),
        )

    def open(self):
        if self._sock is None:
            self._sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
            LOGGER.info("Publishing detections to udp://%s:%d", *self.address)

    def close(self):
        if self._sock is not None:
            self._sock.close()
            self._sock = None

    def publish_once(self) -> bool:
        """Send the current snapshot. Returns False if the send failed."""
        self.open()
        data = encode_detections(self.snapshot(), self.sequence)
        if len(data) > MAX_DATAGRAM_BYTES:
            LOGGER.warning("Detection snapshot too large to send (%d bytes)", len(data))
            return False
        try:
            self._sock.sendto(data, self.address)
        except OSError as e:
            self.send_errors += 1
            LOGGER.warning("Failed to send detections to %s:%d: %s", *self.address, e)
            return False
        self.sequence += 1
        return True

    def start(self):
        if self._thread is not None:
            return
        self.open()
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="udp-publisher", daemon=True)
        self._thread.start()

    def _run(self):
        next_send = time.monotonic()
        while not self._stop_event.is_set():
            self.publish_once()
            next_send += self.interval
            delay = next_send - time.monotonic()
            if delay < 0:
                # Fell behind; resynchronize instead of bursting.
                next_send = time.monotonic()
                delay = 0
            self._stop_event.wait(delay)

    def stop(self):
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=2.0)
            self._thread = None
        self.close()
