"""
UDP transport for joint states, joint commands and poses.

Datagram layout (little-endian): uint32 timestamp in ms (epoch, wrapped to
32 bits) followed by float64 values, optionally followed by a 32-byte
HMAC-SHA256 of everything before it. Joint states whose sender timestamp is
older than max_age_s are dropped; the 32-bit wrap is handled, and a
timestamp ahead of the local clock counts as fresh.

- Joint states: one datagram with >= n_joints values, received on
  `measurement_port`.
- Commands: one datagram with one value per joint channel, sent to
  `command_port + joint_index`.
- Poses: [x, y, z, qw, qx, qy, qz] sent to `pose_port`.
"""

import hashlib
import hmac
import logging
import socket
import struct
import threading
import time
from typing import List, Optional, Tuple

from .frames import CartesianPose
from .transport import JointCommandSink, MeasurementCallback, MeasurementSource, PoseSink, Transport
from .trigger import StartTrigger

logger = logging.getLogger(__name__)

HMAC_DIGEST_SIZE = 32  # SHA-256
_HEADER = struct.Struct('<I')
_VALUE_SIZE = struct.calcsize('<d')
_TIMESTAMP_MASK = 0xFFFFFFFF


def now_ms() -> int:
    return int(time.time() * 1000) & _TIMESTAMP_MASK


def timestamp_age_ms(timestamp_ms: int, now: Optional[int] = None) -> int:
    """Age of a wrapped 32-bit ms timestamp. Timestamps from the future give 0."""
    now = now_ms() if now is None else now
    age = (now - timestamp_ms) & _TIMESTAMP_MASK
    return 0 if age >= 0x80000000 else age


class DatagramCodec:
    """Timestamped float64 payloads with optional HMAC authentication."""

    def __init__(self, hmac_key: Optional[str] = None):
        self._hmac_key = hmac_key.encode('utf-8') if isinstance(hmac_key, str) else hmac_key

    @property
    def authenticated(self) -> bool:
        return bool(self._hmac_key)

    def encode(self, values, timestamp_ms: Optional[int] = None) -> bytes:
        if timestamp_ms is None:
            timestamp_ms = now_ms()
        data = _HEADER.pack(timestamp_ms & _TIMESTAMP_MASK) + struct.pack(f'<{len(values)}d', *[float(v) for v in values])
        if self._hmac_key:
            data += hmac.new(self._hmac_key, data, hashlib.sha256).digest()
        return data

    def decode(self, data: bytes) -> Tuple[int, List[float]]:
        """Returns (timestamp_ms, values). Raises ValueError on size or authentication errors."""
        if self._hmac_key:
            if len(data) < _HEADER.size + HMAC_DIGEST_SIZE:
                raise ValueError(f"Packet too short for HMAC: {len(data)} bytes")
            payload, received_mac = data[:-HMAC_DIGEST_SIZE], data[-HMAC_DIGEST_SIZE:]
            expected_mac = hmac.new(self._hmac_key, payload, hashlib.sha256).digest()
            if not hmac.compare_digest(received_mac, expected_mac):
                raise ValueError("HMAC mismatch")
        else:
            payload = data

        body = len(payload) - _HEADER.size
        if body < 0 or body % _VALUE_SIZE != 0:
            raise ValueError(f"Wrong packet size: {len(payload)} bytes")
        (timestamp_ms,) = _HEADER.unpack_from(payload)
        values = list(struct.unpack_from(f'<{body // _VALUE_SIZE}d', payload, _HEADER.size))
        return timestamp_ms, values


class UdpJointStateReceiver(MeasurementSource):
    """Receives joint states on a background thread and forwards them to the callback."""

    def __init__(self, host: str, port: int, n_joints: int, max_age_s: float = 0.5,
                 hmac_key: Optional[str] = None):
        self.n_joints = int(n_joints)
        self.max_age_s = float(max_age_s)
        self.codec = DatagramCodec(hmac_key)

        self.socket = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self.socket.settimeout(0.2)
        self.socket.bind((host, port))
        self.address = self.socket.getsockname()

        self._callback: Optional[MeasurementCallback] = None
        self._lock = threading.Lock()
        self._latest: Optional[List[float]] = None
        self._latest_time = 0.0
        self._running = False
        self._thread: Optional[threading.Thread] = None

        # Statistics
        self.packets_received = 0
        self.packets_rejected = 0
        self.packets_expired = 0

        logger.info("UDP joint state receiver listening on %s:%d", *self.address)

    def start(self, callback: MeasurementCallback) -> None:
        self._callback = callback
        if self._thread is not None and self._thread.is_alive():
            return
        self._running = True
        self._thread = threading.Thread(target=self._receive_loop, name="udp-joint-states", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._running = False
        if self._thread is not None:
            self._thread.join(timeout=2.0)
            self._thread = None
        self.socket.close()

    def get_latest(self) -> Optional[List[float]]:
        """Latest joint state if younger than max_age_s, else None."""
        with self._lock:
            if self._latest is None:
                return None
            if time.monotonic() - self._latest_time > self.max_age_s:
                return None
            return list(self._latest)

    def get_connection_stats(self) -> dict:
        with self._lock:
            age = time.monotonic() - self._latest_time if self._latest is not None else float('inf')
            return {
                'packets_received': self.packets_received,
                'packets_rejected': self.packets_rejected,
                'packets_expired': self.packets_expired,
                'data_age_seconds': age,
                'is_connected': age < self.max_age_s,
                'has_data': self._latest is not None,
            }

    def handle_datagram(self, data: bytes) -> bool:
        """Decode one datagram and forward it. Returns False if it was rejected."""
        try:
            timestamp_ms, values = self.codec.decode(data)
        except ValueError as e:
            self.packets_rejected += 1
            logger.debug("Rejected joint state packet: %s", e)
            return False
        if len(values) < self.n_joints:
            self.packets_rejected += 1
            logger.debug("Rejected joint state packet with %d values (need %d)", len(values), self.n_joints)
            return False
        age_ms = timestamp_age_ms(timestamp_ms)
        if age_ms > self.max_age_s * 1000.0:
            with self._lock:
                self.packets_expired += 1
            logger.debug("Dropped joint state packet %d ms old", age_ms)
            return False

        with self._lock:
            self._latest = values
            self._latest_time = time.monotonic()
            self.packets_received += 1
        if self._callback is not None:
            self._callback(values)
        return True

    def _receive_loop(self) -> None:
        while self._running:
            try:
                data, _ = self.socket.recvfrom(65535)
            except socket.timeout:
                continue
            except OSError as e:
                if self._running:
                    logger.error("Receive error: %s", e)
                break
            self.handle_datagram(data)


class UdpCommandSender(JointCommandSink):
    """One UDP destination port per joint: command_port + joint index."""

    def __init__(self, host: str, command_port: int, n_joints: int, hmac_key: Optional[str] = None):
        super().__init__(n_joints)
        self.host = host
        self.command_port = int(command_port)
        self.codec = DatagramCodec(hmac_key)
        self.socket = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self.packets_sent = 0

    def publish_joint(self, index: int, value: float) -> None:
        if not 0 <= index < self.n_joints:
            raise IndexError(f"Joint index {index} out of range")
        self.socket.sendto(self.codec.encode([value]), (self.host, self.command_port + index))
        self.packets_sent += 1

    def close(self) -> None:
        self.socket.close()


class UdpPoseSender(PoseSink):
    def __init__(self, host: str, pose_port: int, hmac_key: Optional[str] = None):
        self.address = (host, int(pose_port))
        self.codec = DatagramCodec(hmac_key)
        self.socket = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)

    def publish(self, pose: CartesianPose) -> None:
        values = list(pose.position) + list(pose.quaternion)
        self.socket.sendto(self.codec.encode(values), self.address)

    def close(self) -> None:
        self.socket.close()


def udp_transport(udp_config, n_joints: int, trigger: Optional[StartTrigger] = None) -> Transport:
    """Build a Transport from a UdpConfig section."""
    key = udp_config.hmac_key or None
    return Transport(
        source=UdpJointStateReceiver(udp_config.bind_host, udp_config.measurement_port, n_joints,
                                     max_age_s=udp_config.max_age_s, hmac_key=key),
        commands=UdpCommandSender(udp_config.remote_host, udp_config.command_port, n_joints, hmac_key=key),
        pose_sink=UdpPoseSender(udp_config.remote_host, udp_config.pose_port, hmac_key=key),
        trigger=trigger if trigger is not None else StartTrigger(),
    )
