"""
Tests for the UDP detection publisher.
"""

import json
import os
import socket
import sys
import unittest

sys.path.append(os.path.join(os.path.dirname(__file__), "..", "src"))

from tagbridge.publisher import DetectionPublisher, encode_detections  # type: ignore

DETECTION = {
    "id": 7,
    "rvec": [3.1, 0.0, 0.1],
    "tvec": [0.01, -0.02, 0.45],
    "corners": [[10.0, 10.0], [50.0, 10.0], [50.0, 50.0], [10.0, 50.0]],
    "pose_valid": True,
    "sequence": 12,
    "timestamp": 5.0,
}


class TestEncodeDetections(unittest.TestCase):

    def test_wire_format(self):
        payload = json.loads(encode_detections([DETECTION], sequence=3, timestamp=42.0))
        self.assertEqual(payload["sequence"], 3)
        self.assertEqual(payload["timestamp"], 42.0)
        self.assertEqual(
            payload["detections"],
            [
                {
                    "id": 7,
                    "rvec": DETECTION["rvec"],
                    "tvec": DETECTION["tvec"],
                    "corners": DETECTION["corners"],
                    "pose_valid": True,
                }
            ],
        )

    def test_empty_snapshot(self):
        payload = json.loads(encode_detections([], sequence=0))
        self.assertEqual(payload["detections"], [])
        self.assertIn("timestamp", payload)

    def test_compact_encoding(self):
        self.assertNotIn(b" ", encode_detections([DETECTION], sequence=1, timestamp=1.0))


class TestDetectionPublisher(unittest.TestCase):
    """Send to a local UDP socket."""

    def setUp(self):
        self.receiver = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self.receiver.bind(("127.0.0.1", 0))
        self.receiver.settimeout(2.0)
        self.addCleanup(self.receiver.close)
        self.port = self.receiver.getsockname()[1]
        self.snapshot = [DETECTION]

    def make_publisher(self, rate_hz=30.0):
        publisher = DetectionPublisher(lambda: list(self.snapshot), "127.0.0.1", self.port, rate_hz)
        self.addCleanup(publisher.stop)
        return publisher

    def receive(self):
        data, _ = self.receiver.recvfrom(65536)
        return json.loads(data)

    def test_publish_once(self):
        publisher = self.make_publisher()
        self.assertTrue(publisher.publish_once())

        payload = self.receive()
        self.assertEqual(payload["sequence"], 0)
        self.assertEqual([d["id"] for d in payload["detections"]], [7])
        self.assertEqual(publisher.sequence, 1)

    def test_sequence_increments(self):
        publisher = self.make_publisher()
        publisher.publish_once()
        self.snapshot = []
        publisher.publish_once()

        self.assertEqual(self.receive()["sequence"], 0)
        second = self.receive()
        self.assertEqual(second["sequence"], 1)
        self.assertEqual(second["detections"], [])

    def test_background_thread(self):
        publisher = self.make_publisher(rate_hz=100.0)
        publisher.start()
        first = self.receive()
        second = self.receive()
        publisher.stop()
        self.assertLess(first["sequence"], second["sequence"])

    def test_oversized_snapshot_not_sent(self):
        self.snapshot = [dict(DETECTION, id=i) for i in range(2000)]
        publisher = self.make_publisher()
        self.assertFalse(publisher.publish_once())
        self.assertEqual(publisher.sequence, 0)

    def test_from_config(self):
        publisher = DetectionPublisher.from_config(list, {"host": "127.0.0.1", "port": self.port, "rate_hz": 10.0})
        self.assertEqual(publisher.address, ("127.0.0.1", self.port))
        self.assertAlmostEqual(publisher.interval, 0.1)

    def test_invalid_rate(self):
        with self.assertRaises(ValueError):
            DetectionPublisher(list, rate_hz=0)


if __name__ == "__main__":
    unittest.main()
