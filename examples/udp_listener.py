"""
Minimal host-side listener for published detections.

Stands in for a game engine scene: binds the publisher's UDP port and prints
each marker pose as it arrives. A Godot scene does the same with
``PacketPeerUDP.bind()`` and ``get_packet()`` in ``_process``.
"""

import argparse
import json
import socket


def main():
    parser = argparse.ArgumentParser(description="Print detections published by tagbridge")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=4242)
    args = parser.parse_args()

    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind((args.host, args.port))
    print(f"Listening on udp://{args.host}:{args.port} - Ctrl+C to quit")

    try:
        while True:
            data, _ = sock.recvfrom(65536)
            packet = json.loads(data)
            detections = packet["detections"]
            if not detections:
                continue
            for detection in detections:
                x, y, z = detection["tvec"]
                print(
                    f"#{packet['sequence']:>6} marker {detection['id']:>3} "
                    f"t=({x:+.3f}, {y:+.3f}, {z:+.3f}) m"
                    f"{'' if detection['pose_valid'] else ' (no pose)'}"
                )
    except KeyboardInterrupt:
        print()
    finally:
        sock.close()


if __name__ == "__main__":
    main()
