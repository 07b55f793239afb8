"""
Shared test helpers for the fusion test suite.

Provides plot embedding for the HTML report and lightweight stand-ins for
the radar and display boundaries.
"""

import base64
import io

import numpy as np

from fusion.radar import LatestPointBuffer, RadarEnvelope


def attach_plot_to_html_report(request, fig, name):
    """
    Embed a matplotlib figure into the pytest HTML report as an inline PNG.

    If the pytest-html plugin is not active the function does nothing, so
    tests still pass without it.

    :param request:  the pytest ``request`` fixture
    :param fig:      a ``matplotlib.figure.Figure`` to embed
    :param name:     a short label shown beside the image in the report
    """
    buf = io.BytesIO()
    fig.savefig(buf, format="png", dpi=160)

    html_plugin = request.config.pluginmanager.getplugin("html")
    if html_plugin is not None and hasattr(html_plugin, "extras"):
        png_b64 = base64.b64encode(buf.getvalue()).decode("ascii")
        extra = getattr(request.node, "extra", [])
        extra.append(html_plugin.extras.png(png_b64, name=name))
        request.node.extra = extra


class StaticRadar:
    """
    Radar boundary that serves a fixed snapshot and records calls.

    Uses the real envelope gating so alignment tests exercise the same
    predicate as RadarServer.
    """
    def __init__(self, points=None, envelope=None):
        self.mailbox = LatestPointBuffer()
        self.mailbox.publish(points)
        self.envelope = envelope if envelope is not None else RadarEnvelope(range_min=0.0, range_max=1e6, fov=2.0 * np.pi)
        self.started = 0
        self.closed = 0
        self.snapshot_reads = 0

    def start_ingestion_worker(self):
        self.started += 1

    def publish(self, points):
        self.mailbox.publish(points)

    def current_snapshot(self):
        self.snapshot_reads += 1
        return self.mailbox.snapshot()

    def gate_filter(self, lidar_points, origin=None):
        lidar_points = np.asarray(lidar_points, dtype=np.float32).reshape(-1, 3)
        return lidar_points[self.envelope.contains(lidar_points, origin=origin)].copy()

    def close(self):
        self.closed += 1
