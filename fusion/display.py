"""
Scene and Display Surfaces

A Scene is the complete set of tagged point clouds handed to a display for
one redraw. Displays expose three calls to the fusion loop: show(scene),
close_requested() and close().

HeadlessDisplay records scenes in memory (tests, batch runs).
MatplotlibDisplay draws each scene as a live 3D scatter plot.
"""

import logging
from dataclasses import dataclass
from enum import Enum

import numpy as np

from .Config import FusionConfig
from .lidar import valid_point_mask
from .math_utils import _as_points

logger = logging.getLogger(__name__)


class CloudTag(str, Enum):
    LIDAR = "lidar"
    RADAR = "radar"
    GATED = "gated"


@dataclass(frozen=True)
class SceneCloud:
    """
    One tagged point buffer of a Scene.

    :param tag:    Category of the cloud.
    :param color:  RGB display color in [0, 255].
    :param points: (N, 3) float32 points, read-only.
    """
    tag: CloudTag
    color: tuple
    points: np.ndarray

    def __post_init__(self):
        points = np.array(_as_points(self.points, "points"), dtype=np.float32)
        points.setflags(write=False)
        object.__setattr__(self, "points", points)
        object.__setattr__(self, "tag", CloudTag(self.tag))
        object.__setattr__(self, "color", tuple(int(channel) for channel in self.color))

    def __len__(self):
        return int(self.points.shape[0])


@dataclass(frozen=True)
class Scene:
    """Ordered, tagged clouds for one redraw."""
    clouds: tuple
    frame_index: int = 0

    def __post_init__(self):
        object.__setattr__(self, "clouds", tuple(self.clouds))

    def __len__(self):
        return len(self.clouds)

    def __iter__(self):
        return iter(self.clouds)

    def cloud(self, tag):
        """Return the cloud with the given tag, or raise KeyError."""
        tag = CloudTag(tag)
        for cloud in self.clouds:
            if cloud.tag is tag:
                return cloud
        raise KeyError(tag.value)

    def point_counts(self):
        """Mapping of tag value -> number of points."""
        return {cloud.tag.value: len(cloud) for cloud in self.clouds}


class HeadlessDisplay:
    """
    Display that keeps the shown scenes instead of drawing them.

    :param close_after: Request close after this many shown scenes; None = never.
    :param keep:        Number of most recent scenes retained.
    """
    def __init__(self, close_after=None, keep=1):
        self.close_after = None if close_after is None else int(close_after)
        self.keep = max(int(keep), 1)
        self.scenes = []
        self.frames_shown = 0
        self.closed = False
        self._close_requested = False

    @property
    def last_scene(self):
        return self.scenes[-1] if self.scenes else None

    def show(self, scene):
        self.scenes.append(scene)
        del self.scenes[:-self.keep]
        self.frames_shown += 1
        if self.close_after is not None and self.frames_shown >= self.close_after:
            self._close_requested = True

    def request_close(self):
        self._close_requested = True

    def close_requested(self):
        return self._close_requested

    def close(self):
        self.closed = True


class MatplotlibDisplay:
    """
    Live 3D scatter display.

    Each show() replaces the previous scene: one scatter artist per tag is
    updated in place and the figure is flushed with a short pause. Closing
    the window or pressing "q" raises the close flag.
    """
    def __init__(self, config=FusionConfig, point_size=1.0, pause=0.001):
        import matplotlib.pyplot as plt

        self._plt = plt
        self.point_size = float(point_size)
        self.pause = max(float(pause), 0.0)  # [s] event loop time per redraw
        self._close_requested = False

        plt.ion()
        self.figure = plt.figure(num=getattr(config, "window_name", "Velodyne"))
        self.axes = self.figure.add_subplot(projection="3d")
        self.axes.set_xlabel("x")
        self.axes.set_ylabel("y")
        self.axes.set_zlabel("z")
        self._artists = {}
        self.figure.canvas.mpl_connect("close_event", self._on_close)
        self.figure.canvas.mpl_connect("key_press_event", self._on_key)

    def _on_close(self, event):
        self._close_requested = True

    def _on_key(self, event):
        if event.key == "q":
            self._close_requested = True

    def show(self, scene):
        seen = set()
        for cloud in scene:
            points = cloud.points[valid_point_mask(cloud.points)]
            color = np.asarray(cloud.color, dtype=float) / 255.0
            artist = self._artists.get(cloud.tag)
            if artist is None:
                artist = self.axes.scatter([], [], [], s=self.point_size, color=color, label=cloud.tag.value)
                self._artists[cloud.tag] = artist
            artist._offsets3d = (points[:, 0], points[:, 1], points[:, 2])
            seen.add(cloud.tag)

        # Tags missing from this scene are cleared, never carried over.
        for tag, artist in self._artists.items():
            if tag not in seen:
                artist._offsets3d = (np.empty(0), np.empty(0), np.empty(0))

        self.figure.canvas.draw_idle()
        if self.pause > 0.0:
            self._plt.pause(self.pause)

    def close_requested(self):
        return self._close_requested

    def close(self):
        self._plt.close(self.figure)
