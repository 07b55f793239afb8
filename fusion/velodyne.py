"""
Velodyne Capture

This module implements the capture boundary of the fusion pipeline: it reads
Velodyne VLP-16 / HDL-32E data packets from a recorded pcap file or from the
live UDP stream, decodes them into laser returns, groups the returns into
full rotations and hands completed rotations to the consumer through a
bounded queue.

Data packet layout (1206 byte UDP payload, little endian):
    12 firing blocks of 100 bytes:
        uint16 flag          0xEEFF
        uint16 azimuth       [0.01 deg]
        32 x (uint16 distance [2 mm], uint8 intensity)
    uint32 timestamp     [us past the hour]
    uint8  return mode
    uint8  product id

In dual return mode consecutive blocks share an azimuth (last, strongest);
only the last return of each pair is decoded.

The primary entry points are:
    open_capture()                   Build and open a capture from a CaptureConfig.
    VelodyneCapture.pull_next_batch() Next completed rotation (bounded wait).
    ReplayCapture                    In-memory capture serving pre-recorded batches.
"""

import logging
import queue
import socket
import struct
import threading
import time
from collections import deque

import numpy as np

from .Config import CaptureConfig
from .lidar import LASER_RETURN_DTYPE, as_laser_returns

logger = logging.getLogger(__name__)

PACKET_SIZE = 1206  # [bytes] UDP payload of one data packet
BLOCKS_PER_PACKET = 12
LASERS_PER_BLOCK = 32
BLOCK_FLAG = 0xEEFF
DUAL_RETURN = 0x39  # return mode byte; 0x37 strongest and 0x38 last are single return

BLOCK_DTYPE = np.dtype(
    [
        ("flag", "<u2"),
        ("azimuth", "<u2"),  # [0.01 deg]
        ("returns", [("distance", "<u2"), ("intensity", "u1")], (LASERS_PER_BLOCK,)),
    ]
)
PACKET_DTYPE = np.dtype(
    [
        ("blocks", BLOCK_DTYPE, (BLOCKS_PER_PACKET,)),
        ("timestamp", "<u4"),
        ("return_mode", "u1"),
        ("product", "u1"),
    ]
)

# Channel elevation tables [deg], indexed by laser id
VLP16_VERTICAL_ANGLES = (-15.0, 1.0, -13.0, 3.0, -11.0, 5.0, -9.0, 7.0, -7.0, 9.0, -5.0, 11.0, -3.0, 13.0, -1.0, 15.0)
HDL32E_VERTICAL_ANGLES = (
    -30.67, -9.33, -29.33, -8.00, -28.00, -6.67, -26.67, -5.33,
    -25.33, -4.00, -24.00, -2.67, -22.67, -1.33, -21.33, 0.00,
    -20.00, 1.33, -18.67, 2.67, -17.33, 4.00, -16.00, 5.33,
    -14.67, 6.67, -13.33, 8.00, -12.00, 9.33, -10.67, 10.67,
)

# Firing timing [us], used to interpolate each laser's azimuth inside a block
VLP16_DSR_TOFFSET = 2.304
VLP16_FIRING_TOFFSET = 55.296
VLP16_BLOCK_TDURATION = 110.592
HDL32E_DSR_TOFFSET = 1.152
HDL32E_FIRING_TOFFSET = 46.08


def _laser_layout(model):
    """
    Per-slot laser ids, elevations and azimuth interpolation fractions.

    A VLP-16 block carries two 16-laser firing sequences; an HDL-32E block
    carries one 32-laser sequence. The fraction is the share of the azimuth
    gap to the next block that has elapsed when the slot fires.

    :param model: "VLP16" or "HDL32E".
    :return: (laser_ids, vertical_angles, fractions), each of shape (32,).
    """
    slots = np.arange(LASERS_PER_BLOCK)
    if model == "VLP16":
        laser_ids = slots % 16
        firing = slots // 16
        vertical = np.asarray(VLP16_VERTICAL_ANGLES, dtype=float)[laser_ids]
        fractions = (laser_ids * VLP16_DSR_TOFFSET + firing * VLP16_FIRING_TOFFSET) / VLP16_BLOCK_TDURATION
    elif model == "HDL32E":
        laser_ids = slots
        vertical = np.asarray(HDL32E_VERTICAL_ANGLES, dtype=float)
        fractions = slots * HDL32E_DSR_TOFFSET / HDL32E_FIRING_TOFFSET
    else:
        raise ValueError(f"Unsupported Velodyne model: {model!r}.")
    return laser_ids.astype(np.uint8), vertical, fractions


class VelodyneDecoder:
    """
    Stateful packet decoder that splits the return stream into rotations.

    A rotation ends where the azimuth wraps around. Returns decoded after
    the wrap start the next rotation, which stays pending until its own
    wrap (or until flush()). A rotation that reaches max_rotation_packets
    without wrapping is emitted as is.
    """
    def __init__(self, model="VLP16", distance_scale=0.2, max_rotation_packets=400):
        self.model = str(model)
        self.distance_scale = float(distance_scale)  # [scene units / raw tick]
        if self.distance_scale <= 0.0:
            raise ValueError("distance_scale must be > 0.")
        self.max_rotation_packets = int(max_rotation_packets)
        if self.max_rotation_packets < 1:
            raise ValueError("max_rotation_packets must be >= 1.")
        self._laser_ids, self._vertical, self._fractions = _laser_layout(self.model)
        self._pending = []  # partial rotation chunks
        self._last_azimuth = None  # [deg] azimuth of the last decoded return

    def decode_packet(self, payload):
        """
        Decode one data packet into laser returns in firing order.

        :param payload: 1206-byte UDP payload.
        :return: Structured array of 384 returns (192 in dual return mode), or
                 None if the payload is not a data packet.
        """
        if len(payload) != PACKET_SIZE:
            return None
        packet = np.frombuffer(payload, dtype=PACKET_DTYPE, count=1)[0]
        blocks = packet["blocks"]
        if np.any(blocks["flag"] != BLOCK_FLAG):
            return None

        if packet["return_mode"] == DUAL_RETURN:
            # Blocks come in (last, strongest) pairs sharing one azimuth; keep the last return.
            blocks = blocks[::2]
        n_blocks = blocks.shape[0]

        block_azimuth = blocks["azimuth"].astype(float) / 100.0  # [deg]
        gaps = np.diff(block_azimuth) % 360.0
        gaps = np.append(gaps, gaps[-1])  # last block reuses the previous gap

        azimuth = (block_azimuth[:, None] + gaps[:, None] * self._fractions[None, :]) % 360.0

        returns = np.empty(n_blocks * LASERS_PER_BLOCK, dtype=LASER_RETURN_DTYPE)
        returns["distance"] = (blocks["returns"]["distance"].astype(float) * self.distance_scale).reshape(-1)
        returns["azimuth"] = azimuth.reshape(-1)
        returns["vertical"] = np.tile(self._vertical, n_blocks)
        returns["intensity"] = blocks["returns"]["intensity"].reshape(-1)
        returns["laser_id"] = np.tile(self._laser_ids, n_blocks)
        return returns

    def feed(self, payload):
        """
        Decode a packet and return every rotation it completes.

        :param payload: Raw UDP payload; non data packets are ignored.
        :return: List of structured arrays, one per completed rotation.
        """
        returns = self.decode_packet(payload)
        if returns is None:
            return []

        azimuth = returns["azimuth"]
        wraps = list(np.flatnonzero(np.diff(azimuth) < 0.0) + 1)
        if self._last_azimuth is not None and azimuth[0] < self._last_azimuth:
            wraps.insert(0, 0)
        self._last_azimuth = float(azimuth[-1])

        completed = []
        start = 0
        for index in wraps:
            if index > start:
                self._pending.append(returns[start:index])
            if self._pending:
                completed.append(np.concatenate(self._pending))
            self._pending = []
            start = index
        self._pending.append(returns[start:])

        # A stalled head never wraps; cut the rotation instead of growing it forever.
        if len(self._pending) >= self.max_rotation_packets:
            logger.warning("No azimuth wrap after %d packets, emitting partial rotation", len(self._pending))
            completed.append(np.concatenate(self._pending))
            self._pending = []
        return completed

    def flush(self):
        """Return the pending partial rotation (possibly empty) and reset."""
        if not self._pending:
            return np.empty(0, dtype=LASER_RETURN_DTYPE)
        rotation = np.concatenate(self._pending)
        self._pending = []
        self._last_azimuth = None
        return rotation


class PcapPacketSource:
    """
    Reads UDP payloads from a libpcap capture file.

    Supports both byte orders, microsecond and nanosecond timestamps, and
    Ethernet or raw IPv4 link layers.
    """
    _MAGIC = {
        b"\xd4\xc3\xb2\xa1": ("<", 1e-6),
        b"\xa1\xb2\xc3\xd4": (">", 1e-6),
        b"\x4d\x3c\xb2\xa1": ("<", 1e-9),
        b"\xa1\xb2\x3c\x4d": (">", 1e-9),
    }
    LINKTYPE_ETHERNET = 1
    LINKTYPE_RAW = 101

    def __init__(self, path, port=None, realtime=False):
        self.path = str(path)
        self.port = None if port is None else int(port)
        self.realtime = bool(realtime)
        self._file = None
        self._endian = "<"
        self._tick = 1e-6
        self._linktype = self.LINKTYPE_ETHERNET

    def open(self):
        """
        Open the file and validate its global header.

        :raises OSError: If the file cannot be opened.
        :raises ValueError: If the file is not a supported pcap capture.
        """
        handle = open(self.path, "rb")
        header = handle.read(24)
        if len(header) < 24 or header[:4] not in self._MAGIC:
            handle.close()
            raise ValueError(f"{self.path} is not a pcap capture.")
        self._endian, self._tick = self._MAGIC[header[:4]]
        self._linktype = struct.unpack(self._endian + "I", header[20:24])[0]
        if self._linktype not in (self.LINKTYPE_ETHERNET, self.LINKTYPE_RAW):
            handle.close()
            raise ValueError(f"Unsupported pcap link type {self._linktype}.")
        self._file = handle

    def _udp_payload(self, frame):
        """Strip link, IPv4 and UDP headers; None if the frame is not UDP."""
        offset = 0
        if self._linktype == self.LINKTYPE_ETHERNET:
            if len(frame) < 14 or frame[12:14] != b"\x08\x00":
                return None
            offset = 14
        if len(frame) < offset + 20 or frame[offset] >> 4 != 4:
            return None
        ihl = (frame[offset] & 0x0F) * 4
        if frame[offset + 9] != 17:  # not UDP
            return None
        udp = offset + ihl
        if len(frame) < udp + 8:
            return None
        dst_port, length = struct.unpack("!HH", frame[udp + 2:udp + 6])
        if self.port is not None and dst_port != self.port:
            return None
        return frame[udp + 8:udp + length]

    def packets(self, stop_event=None):
        """
        Yield (timestamp [s], payload) for every UDP datagram in the file.

        With realtime enabled, consecutive packets are spaced by their
        recorded timestamp difference.
        """
        if self._file is None:
            raise RuntimeError("PcapPacketSource is not open.")

        record = struct.Struct(self._endian + "IIII")
        first_stamp = None
        wall_start = None
        while stop_event is None or not stop_event.is_set():
            header = self._file.read(record.size)
            if len(header) < record.size:
                return
            seconds, fraction, captured, _ = record.unpack(header)
            frame = self._file.read(captured)
            if len(frame) < captured:
                return
            payload = self._udp_payload(frame)
            if payload is None:
                continue

            stamp = seconds + fraction * self._tick  # [s]
            if self.realtime:
                if first_stamp is None:
                    first_stamp, wall_start = stamp, time.monotonic()
                delay = (stamp - first_stamp) - (time.monotonic() - wall_start)
                if delay > 0.0:
                    if stop_event is None:
                        time.sleep(delay)
                    elif stop_event.wait(delay):
                        return
            yield stamp, payload

    def close(self):
        if self._file is not None:
            self._file.close()
            self._file = None


class UdpPacketSource:
    """Receives data packets from a live sensor."""
    def __init__(self, address="0.0.0.0", port=2368, timeout=0.5):
        self.address = str(address)
        self.port = int(port)
        self.timeout = float(timeout)
        self._socket = None

    def open(self):
        """
        Bind the receive socket.

        :raises OSError: If the address/port cannot be bound.
        """
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((self.address, self.port))
        except OSError:
            sock.close()
            raise
        sock.settimeout(self.timeout)
        self._socket = sock

    def packets(self, stop_event=None):
        """Yield (timestamp [s], payload) until stopped or the socket closes."""
        while stop_event is None or not stop_event.is_set():
            sock = self._socket
            if sock is None:
                return
            try:
                payload, _ = sock.recvfrom(2048)
            except socket.timeout:
                continue
            except OSError:
                return  # socket closed underneath us
            yield time.time(), payload

    def close(self):
        if self._socket is not None:
            self._socket.close()
            self._socket = None


class VelodyneCapture:
    """
    Threaded capture: a worker decodes packets, the consumer pulls rotations.

    Completed rotations wait in a bounded queue; when it is full the oldest
    rotation is dropped so the consumer always sees recent data.
    """
    def __init__(self, source, config=CaptureConfig):
        """
        :param source: PcapPacketSource, UdpPacketSource or any object with
                       open(), packets(stop_event) and close().
        :param config: Class or instance with CaptureConfig-compatible attributes.
        """
        self.source = source
        self.decoder = VelodyneDecoder(
            model=getattr(config, "model", "VLP16"),
            distance_scale=getattr(config, "distance_scale", 0.2),
            max_rotation_packets=getattr(config, "max_rotation_packets", 400),
        )
        self.pull_timeout = max(float(getattr(config, "pull_timeout", 0.1)), 0.0)  # [s]
        queue_size = int(getattr(config, "queue_size", 16))
        if queue_size < 1:
            raise ValueError("queue_size must be >= 1.")
        self._rotations = queue.Queue(maxsize=queue_size)
        self._stop_event = threading.Event()
        self._thread = None
        self._opened = False
        self.dropped_rotations = 0

    def open(self):
        """
        Open the packet source and start the decoding worker.

        Failures are logged and reported through is_open().

        :return: True if the capture is open.
        """
        if self._opened:
            return True
        try:
            self.source.open()
        except (OSError, ValueError) as exc:
            logger.error("Can't open Velodyne capture: %s", exc)
            return False

        self._opened = True
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="VelodyneCapture", daemon=True)
        self._thread.start()
        return True

    def _push(self, rotation):
        """Queue a rotation, evicting the oldest one when the queue is full."""
        while True:
            try:
                self._rotations.put_nowait(rotation)
                return
            except queue.Full:
                try:
                    self._rotations.get_nowait()
                    self.dropped_rotations += 1
                except queue.Empty:
                    pass

    def _run(self):
        for _, payload in self.source.packets(self._stop_event):
            for rotation in self.decoder.feed(payload):
                self._push(rotation)
        if not self._stop_event.is_set():
            rotation = self.decoder.flush()
            if rotation.size:
                self._push(rotation)
        logger.info("Velodyne capture worker finished")

    def is_open(self):
        return self._opened

    def is_run(self):
        """True while the worker is alive or rotations are still queued."""
        if not self._opened:
            return False
        alive = self._thread is not None and self._thread.is_alive()
        return alive or not self._rotations.empty()

    def pull_next_batch(self, timeout=None):
        """
        Next completed rotation, waiting at most timeout seconds.

        :param timeout: Bounded wait [s]; None uses the configured pull_timeout.
        :return: Structured array of returns; empty when nothing arrived in time.
        """
        wait = self.pull_timeout if timeout is None else max(float(timeout), 0.0)
        try:
            return self._rotations.get(timeout=wait)
        except queue.Empty:
            return np.empty(0, dtype=LASER_RETURN_DTYPE)

    def close(self):
        """Stop the worker and release the packet source."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=2.0)
            self._thread = None
        self.source.close()
        self._opened = False


class ReplayCapture:
    """
    Capture boundary backed by an in-memory list of batches.

    Each pull serves the next batch; an empty batch in the list reproduces
    a tick without data.
    """
    def __init__(self, batches):
        self._batches = deque(as_laser_returns(batch) for batch in batches)
        self._opened = True

    def is_open(self):
        return self._opened

    def is_run(self):
        return self._opened and bool(self._batches)

    def pull_next_batch(self, timeout=None):
        if not self._batches:
            return np.empty(0, dtype=LASER_RETURN_DTYPE)
        return self._batches.popleft()

    def close(self):
        self._opened = False
        self._batches.clear()


def open_capture(config=CaptureConfig):
    """
    Build and open the capture selected by the configuration.

    A configured pcap_path selects file replay; otherwise the live socket
    on (address, port) is used.

    :param config: Class or instance with CaptureConfig-compatible attributes.
    :return: VelodyneCapture; check is_open() before use.
    """
    pcap_path = getattr(config, "pcap_path", None)
    port = int(getattr(config, "port", 2368))
    if pcap_path:
        source = PcapPacketSource(
            pcap_path,
            port=port,
            realtime=bool(getattr(config, "realtime_replay", True)),
        )
    else:
        source = UdpPacketSource(
            address=getattr(config, "address", "0.0.0.0"),
            port=port,
            timeout=float(getattr(config, "socket_timeout", 0.5)),
        )
    capture = VelodyneCapture(source, config=config)
    capture.open()
    return capture
