"""
Fusion Loop

Per-frame driver of the LiDAR / radar fusion pipeline. Each iteration
snapshots the radar mailbox, pulls one LiDAR rotation, converts it to a
frame buffer, aligns the radar cloud and gates the LiDAR points, then
hands a freshly assembled Scene to the display.

State machine:
    IDLE     before start()
    RUNNING  steady per-frame cycle
    STOPPED  terminal; reached on a display close request, capture
             exhaustion, or an explicit shutdown()

The primary entry points are:
    FusionLoop.run()     Start, iterate until a stop condition, shut down.
    FusionLoop.step()    One iteration; returns the Scene or None on an empty tick.
"""

import logging
import time
from enum import Enum

from .Config import FrameBuilderConfig, FusionConfig, RadarConfig
from .display import CloudTag, Scene, SceneCloud
from .lidar import LidarFrameBuilder
from .radar import MountOffset, RadarAligner

logger = logging.getLogger(__name__)


class CaptureOpenError(RuntimeError):
    """The capture boundary could not be opened at startup."""


class FusionState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


def build_scene(lidar_points, radar_points, gated_points, config=FusionConfig, frame_index=0):
    """
    Assemble the three tagged clouds of one frame.

    :param lidar_points: (N, 3) LiDAR frame buffer.
    :param radar_points: (M, 3) radar points in the LiDAR frame.
    :param gated_points: (K, 3) LiDAR points inside the radar envelope.
    :param config:       Class or instance with FusionConfig-compatible colors.
    :param frame_index:  Sequence number of the rendered frame.
    :return: Scene with clouds ordered lidar, radar, gated.
    """
    return Scene(
        clouds=(
            SceneCloud(CloudTag.LIDAR, getattr(config, "lidar_color", (255, 255, 255)), lidar_points),
            SceneCloud(CloudTag.RADAR, getattr(config, "radar_color", (227, 11, 92)), radar_points),
            SceneCloud(CloudTag.GATED, getattr(config, "gated_color", (0, 0, 255)), gated_points),
        ),
        frame_index=frame_index,
    )


class FusionLoop:
    """
    Cooperative, single-threaded fusion driver.

    The capture and radar boundaries run their own workers; this loop only
    pulls from them with bounded waits and never holds a lock across frames.
    """
    def __init__(
        self,
        capture,
        radar,
        display,
        frame_builder=None,
        mount_offset=None,
        config=FusionConfig,
        sleep=time.sleep,
    ):
        """
        :param capture:       Capture boundary (is_open, is_run, pull_next_batch, close).
        :param radar:         Radar boundary (start_ingestion_worker, current_snapshot, gate_filter, close).
        :param display:       Display boundary (show, close_requested, close).
        :param frame_builder: LidarFrameBuilder; default uses FrameBuilderConfig.
        :param mount_offset:  MountOffset of the radar; default from RadarConfig.
        :param config:        Class or instance with FusionConfig-compatible attributes.
        :param sleep:         Callable used for the fixed frame pacing wait.
        """
        self.capture = capture
        self.radar = radar
        self.display = display
        self.config = config
        self.frame_builder = frame_builder if frame_builder is not None else LidarFrameBuilder(FrameBuilderConfig)
        offset = mount_offset if mount_offset is not None else MountOffset.from_config(RadarConfig)
        self.aligner = RadarAligner(radar, offset)

        self.frame_period = float(getattr(config, "frame_period", 0.043))  # [s]
        if self.frame_period < 0.0:
            raise ValueError("frame_period must be >= 0.")
        self._sleep = sleep

        self.state = FusionState.IDLE
        self.frames_rendered = 0
        self.frames_skipped = 0

    def start(self):
        """
        Transition IDLE -> RUNNING.

        :raises CaptureOpenError: If the capture boundary is not open.
        :raises RuntimeError: If the loop has already stopped.
        """
        if self.state is FusionState.RUNNING:
            return
        if self.state is FusionState.STOPPED:
            raise RuntimeError("FusionLoop has stopped and cannot be restarted.")
        if not self.capture.is_open():
            logger.error("Can't open capture; aborting fusion loop")
            raise CaptureOpenError("Capture boundary failed to open.")

        self.radar.start_ingestion_worker()
        self.state = FusionState.RUNNING
        logger.info("Fusion loop running (frame period %.3f s)", self.frame_period)

    def should_continue(self):
        """True while running, the capture has data left, and no close was requested."""
        if self.state is not FusionState.RUNNING:
            return False
        return bool(self.capture.is_run()) and not self.display.close_requested()

    def step(self):
        """
        Run one fusion iteration.

        :return: The Scene handed to the display, or None when the LiDAR
                 batch was empty and the tick was skipped.
        """
        if self.state is not FusionState.RUNNING:
            raise RuntimeError(f"step() requires a running loop, state is {self.state.value}.")

        # Snapshot first; the radar worker may publish again at any moment.
        radar_snapshot = self.radar.current_snapshot()

        batch = self.capture.pull_next_batch()
        lidar_points = self.frame_builder.build(batch)
        if lidar_points.shape[0] == 0:
            self.frames_skipped += 1
            logger.debug("Empty LiDAR batch, skipping tick")
            return None

        radar_points, gated_points = self.aligner.align(lidar_points, snapshot=radar_snapshot)
        scene = build_scene(lidar_points, radar_points, gated_points, config=self.config, frame_index=self.frames_rendered)

        if self.frame_period > 0.0:
            self._sleep(self.frame_period)

        self.display.show(scene)
        self.frames_rendered += 1
        logger.debug("Frame %d: %s", scene.frame_index, scene.point_counts())
        return scene

    def run(self, max_frames=None):
        """
        Start if needed, iterate until a stop condition, then shut down.

        :param max_frames: Optional cap on rendered frames.
        :return: Number of frames rendered.
        """
        try:
            self.start()
            while self.should_continue():
                self.step()
                if max_frames is not None and self.frames_rendered >= max_frames:
                    break
        finally:
            self.shutdown()
        return self.frames_rendered

    def shutdown(self):
        """Release capture and radar, close the display, and enter STOPPED."""
        if self.state is FusionState.STOPPED:
            return
        self.state = FusionState.STOPPED
        try:
            self.capture.close()
        finally:
            try:
                self.radar.close()
            finally:
                self.display.close()
        logger.info(
            "Fusion loop stopped after %d frames (%d empty ticks)",
            self.frames_rendered,
            self.frames_skipped,
        )
