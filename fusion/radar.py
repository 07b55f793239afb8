"""
Radar Alignment and Ingestion

This module holds everything on the radar side of the fusion pipeline:

MountOffset       Fixed translation of the radar origin in the LiDAR frame.
RadarEnvelope     Range window and field-of-view cone of valid radar detections.
LatestPointBuffer Single-slot mailbox between the ingestion worker and the loop.
RadarServer       TCP ingestion worker plus the radar boundary interface
                  (start_ingestion_worker, current_snapshot, gate_filter, close).
RadarAligner      Re-expresses the radar snapshot in the LiDAR frame and
                  selects the LiDAR points inside the radar envelope.

Wire format accepted by RadarServer: one radar frame per newline terminated
line, made of whitespace separated "x,y,z" triples in radar-local scene
units. An empty line publishes an empty frame.
"""

import logging
import socket
import socketserver
import threading
from dataclasses import dataclass

import numpy as np

from .Config import RadarConfig
from .math_utils import _as_points, _as_vector3, _normalize, eps

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MountOffset:
    """
    Fixed physical displacement of the radar origin from the LiDAR origin.

    The mapping of up/right/back onto LiDAR axes is rig specific, so it is
    carried alongside the magnitudes as (axis index, sign) pairs.

    :param up:    Upward displacement [scene units].
    :param right: Rightward displacement [scene units].
    :param back:  Backward displacement [scene units].
    :param axes:  ((axis, sign) for up, (axis, sign) for right, (axis, sign) for back).
    """
    up: float = 0.0
    right: float = 0.0
    back: float = 0.0
    axes: tuple = ((2, 1.0), (0, 1.0), (1, -1.0))

    def __post_init__(self):
        axes = tuple((int(axis), float(sign)) for axis, sign in self.axes)
        if len(axes) != 3:
            raise ValueError("axes must map exactly up, right and back.")
        if sorted(axis for axis, _ in axes) != [0, 1, 2]:
            raise ValueError("axes must use each of x, y and z exactly once.")
        if any(sign not in (-1.0, 1.0) for _, sign in axes):
            raise ValueError("axis signs must be +1 or -1.")
        # Frozen dataclass: normalise fields through object.__setattr__.
        object.__setattr__(self, "axes", axes)
        object.__setattr__(self, "up", float(self.up))
        object.__setattr__(self, "right", float(self.right))
        object.__setattr__(self, "back", float(self.back))

    @classmethod
    def from_config(cls, config=RadarConfig):
        up, right, back = _as_vector3(getattr(config, "mount_offset", (0.0, 0.0, 0.0)), "mount_offset")
        axes = getattr(config, "mount_axes", ((2, 1.0), (0, 1.0), (1, -1.0)))
        return cls(up=up, right=right, back=back, axes=axes)

    @property
    def translation(self):
        """Radar origin expressed in the LiDAR frame, shape (3,)."""
        vec = np.zeros(3, dtype=float)
        for value, (axis, sign) in zip((self.up, self.right, self.back), self.axes):
            vec[axis] = sign * value
        return vec

    def to_lidar(self, points):
        """Translate radar-local points into the LiDAR frame."""
        points = _as_points(points, "points")
        if points.shape[0] == 0:
            return points.copy()
        return (points + self.translation).astype(np.float32)

    def to_radar(self, points):
        """Translate LiDAR-frame points into the radar-local frame."""
        points = _as_points(points, "points")
        if points.shape[0] == 0:
            return points.copy()
        return (points - self.translation).astype(np.float32)


class RadarEnvelope:
    """
    Valid detection envelope of the radar.

    A point is inside when its distance from the radar origin lies in
    [range_min, range_max] and its line of sight is within fov/2 of the
    boresight. Non-finite points are never inside.
    """
    def __init__(self, range_min=0.0, range_max=1000.0, fov=np.pi, boresight=(0.0, 1.0, 0.0)):
        self.range_min = float(range_min)  # [scene units]
        self.range_max = float(range_max)  # [scene units]
        self.fov = float(fov)  # [rad] full cone angle
        if self.range_min < 0.0:
            raise ValueError("range_min must be >= 0.")
        if self.range_max <= self.range_min:
            raise ValueError("range_max must be greater than range_min.")
        if not (0.0 < self.fov <= 2.0 * np.pi):
            raise ValueError("fov must be in the range (0, 2*pi].")
        self.boresight = _normalize(_as_vector3(boresight, "boresight"))
        self._cos_half_fov = float(np.cos(self.fov * 0.5))  # precomputed cosine for cone gating

    @classmethod
    def from_config(cls, config=RadarConfig):
        return cls(
            range_min=getattr(config, "range_min", 0.0),
            range_max=getattr(config, "range_max", 1000.0),
            fov=getattr(config, "fov", np.pi),
            boresight=getattr(config, "boresight", (0.0, 1.0, 0.0)),
        )

    def contains(self, points, origin=None):
        """
        Boolean mask of the points inside the envelope.

        :param points: (N, 3) points.
        :param origin: Radar origin in the same frame as points; None = (0, 0, 0).
        :return: Boolean array of shape (N,).
        """
        points = _as_points(points, "points", dtype=float)
        if points.shape[0] == 0:
            return np.zeros(0, dtype=bool)

        rel = points if origin is None else points - _as_vector3(origin, "origin")
        finite = np.all(np.isfinite(rel), axis=1)
        distance = np.linalg.norm(np.where(finite[:, None], rel, 0.0), axis=1)

        in_range = finite & (distance >= self.range_min) & (distance <= self.range_max)
        if self._cos_half_fov <= -1.0 + eps:
            return in_range  # full sphere

        # Points at the radar origin have no line of sight; only the range window applies.
        safe = np.maximum(distance, eps)
        cos_angle = np.clip((rel @ self.boresight) / safe, -1.0, 1.0)
        in_fov = (distance <= eps) | (cos_angle >= self._cos_half_fov)
        return in_range & np.where(finite, in_fov, False)


class LatestPointBuffer:
    """
    Single-slot mailbox holding the most recent radar frame.

    The writer swaps in a new read-only array on every publish; readers
    get that reference back. Nothing is queued, so a slow reader simply
    skips intermediate frames.
    """
    def __init__(self):
        self._lock = threading.Lock()
        self._points = self._freeze(None)
        self.frames_published = 0

    @staticmethod
    def _freeze(points):
        frozen = np.array(_as_points(points, "points"), dtype=np.float32)
        frozen.setflags(write=False)
        return frozen

    def publish(self, points):
        frozen = self._freeze(points)
        with self._lock:
            self._points = frozen
            self.frames_published += 1

    def snapshot(self):
        with self._lock:
            return self._points


def parse_radar_frame(line):
    """
    Parse one wire-format line into an (N, 3) float32 array.

    :param line: Text of one frame, "x,y,z x,y,z ...".
    :return: (N, 3) float32 array.
    :raises ValueError: If any token is not a triple of numbers.
    """
    tokens = line.split()
    points = np.empty((len(tokens), 3), dtype=np.float32)
    for row, token in enumerate(tokens):
        parts = token.split(",")
        if len(parts) != 3:
            raise ValueError(f"radar point {token!r} is not an x,y,z triple.")
        points[row] = [float(part) for part in parts]
    return points


class _RadarRequestHandler(socketserver.StreamRequestHandler):
    """Reads newline delimited frames from one radar client."""

    def setup(self):
        super().setup()
        self.server.track_client(self.request)

    def finish(self):
        self.server.untrack_client(self.request)
        super().finish()

    def handle(self):
        mailbox = self.server.mailbox
        peer = self.client_address
        logger.info("Radar client connected from %s:%s", peer[0], peer[1])
        for raw in self.rfile:
            line = raw.decode("ascii", errors="replace").strip()
            try:
                points = parse_radar_frame(line)
            except ValueError as exc:
                logger.warning("Dropping malformed radar frame from %s: %s", peer[0], exc)
                continue
            if self.server.stopping.is_set():
                break
            mailbox.publish(points)
        logger.info("Radar client %s:%s disconnected", peer[0], peer[1])


class _RadarTCPServer(socketserver.ThreadingTCPServer):
    allow_reuse_address = True
    daemon_threads = True

    def __init__(self, address, mailbox):
        self.mailbox = mailbox
        self.stopping = threading.Event()
        self._clients = set()
        self._clients_lock = threading.Lock()
        super().__init__(address, _RadarRequestHandler)

    def track_client(self, sock):
        with self._clients_lock:
            self._clients.add(sock)

    def untrack_client(self, sock):
        with self._clients_lock:
            self._clients.discard(sock)

    def disconnect_clients(self):
        """Stop publishing and end every open client connection."""
        self.stopping.set()
        with self._clients_lock:
            clients = list(self._clients)
        for sock in clients:
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError as exc:
                logger.debug("Radar client socket already closed: %s", exc)
        return len(clients)

    @property
    def client_count(self):
        with self._clients_lock:
            return len(self._clients)


class RadarServer:
    """
    Radar boundary: network ingestion worker plus envelope gating.

    The ingestion worker is the only writer of the mailbox; the fusion loop
    reads a snapshot once per tick.
    """
    def __init__(self, config=RadarConfig, envelope=None):
        """
        :param config:   Class or instance with RadarConfig-compatible attributes.
        :param envelope: Optional RadarEnvelope; built from config when None.
        """
        self.host = str(getattr(config, "host", "0.0.0.0"))
        self.port = int(getattr(config, "port", 12345))
        self.envelope = envelope if envelope is not None else RadarEnvelope.from_config(config)
        self.mailbox = LatestPointBuffer()
        self._server = None
        self._thread = None

    @property
    def address(self):
        """Bound (host, port); the real port when 0 was requested."""
        if self._server is None:
            return (self.host, self.port)
        return self._server.server_address[:2]

    @property
    def client_count(self):
        """Number of connected radar clients."""
        return 0 if self._server is None else self._server.client_count

    def start_ingestion_worker(self):
        """
        Bind the TCP server and serve clients in a daemon thread.

        :raises OSError: If the address cannot be bound.
        """
        if self._server is not None:
            return
        self._server = _RadarTCPServer((self.host, self.port), self.mailbox)
        self._thread = threading.Thread(target=self._server.serve_forever, name="RadarServer", daemon=True)
        self._thread.start()
        logger.info("Radar server listening on %s:%s", *self.address)

    def publish(self, points):
        """Feed a radar-local frame from an in-process producer."""
        self.mailbox.publish(points)

    def current_snapshot(self):
        """Latest radar frame in the radar-local frame, (N, 3) float32, read-only."""
        return self.mailbox.snapshot()

    def gate_filter(self, lidar_points, origin=None):
        """
        Subset of LiDAR points inside the radar envelope.

        Rows are copied unchanged, in their original order.

        :param lidar_points: (N, 3) LiDAR-frame points.
        :param origin:       Radar origin in the LiDAR frame; None = (0, 0, 0).
        :return: (K, 3) float32 array, K <= N.
        """
        lidar_points = _as_points(lidar_points, "lidar_points")
        mask = self.envelope.contains(lidar_points, origin=origin)
        return lidar_points[mask].copy()

    def close(self):
        if self._server is not None:
            self._server.shutdown()
            dropped = self._server.disconnect_clients()
            self._server.server_close()
            logger.info("Radar server closed (%d client connections ended)", dropped)
            self._server = None
        if self._thread is not None:
            self._thread.join(timeout=2.0)
            self._thread = None


class RadarAligner:
    """
    Brings the radar snapshot into the LiDAR frame and gates LiDAR points.

    :param radar:        Radar boundary (current_snapshot, gate_filter).
    :param mount_offset: MountOffset of the radar origin in the LiDAR frame.
    """
    def __init__(self, radar, mount_offset=None):
        self.radar = radar
        self.mount_offset = mount_offset if mount_offset is not None else MountOffset()

    def align(self, lidar_points, snapshot=None):
        """
        Produce the aligned radar cloud and the gated LiDAR subset for one frame.

        :param lidar_points: (N, 3) LiDAR frame buffer for the current tick.
        :param snapshot:     Radar-local snapshot already taken this tick;
                             None reads a fresh one from the radar.
        :return: (radar points in the LiDAR frame, gated LiDAR points).
        """
        if snapshot is None:
            snapshot = self.radar.current_snapshot()
        radar_in_lidar = self.mount_offset.to_lidar(snapshot)
        gated = self.radar.gate_filter(lidar_points, origin=self.mount_offset.translation)
        gated = _as_points(gated, "gated")
        return radar_in_lidar, gated
