"""
Scene and display tests.

Validates Scene construction and lookup, the headless recorder and the
matplotlib display on the non-interactive Agg backend.
"""

import numpy as np
import pytest

from fusion.display import CloudTag, HeadlessDisplay, Scene, SceneCloud
from fusion.fusion import build_scene


def sample_scene(frame_index=0):
    return build_scene(
        [[0.0, 10.0, 0.0], [np.nan, np.nan, np.nan], [5.0, 5.0, 1.0]],
        [[0.0, 8.0, 0.0]],
        [[0.0, 10.0, 0.0]],
        frame_index=frame_index,
    )


@pytest.fixture
def matplotlib_display():
    matplotlib = pytest.importorskip("matplotlib")
    matplotlib.use("Agg")
    from fusion.display import MatplotlibDisplay

    display = MatplotlibDisplay(pause=0.0)
    yield display
    display.close()


def test_scene_cloud_normalises_points():
    source = np.array([[1.0, 2.0, 3.0]])
    cloud = SceneCloud("gated", [0, 0, 255], source)

    assert cloud.tag is CloudTag.GATED
    assert cloud.color == (0, 0, 255)
    assert cloud.points.dtype == np.float32
    assert len(cloud) == 1
    source[0, 0] = 42.0
    assert cloud.points[0, 0] == 1.0
    with pytest.raises(ValueError):
        cloud.points[0, 0] = 0.0


def test_scene_cloud_empty_and_invalid_points():
    assert len(SceneCloud(CloudTag.RADAR, (1, 2, 3), None)) == 0
    with pytest.raises(ValueError):
        SceneCloud(CloudTag.RADAR, (1, 2, 3), [1.0, 2.0])
    with pytest.raises(ValueError):
        SceneCloud("thermal", (1, 2, 3), [])


def test_scene_lookup_and_counts():
    scene = sample_scene(frame_index=4)

    assert len(scene) == 3
    assert scene.frame_index == 4
    assert scene.point_counts() == {"lidar": 3, "radar": 1, "gated": 1}
    assert scene.cloud(CloudTag.RADAR).points.shape == (1, 3)

    partial = Scene(clouds=[SceneCloud(CloudTag.LIDAR, (255, 255, 255), [])])
    with pytest.raises(KeyError):
        partial.cloud(CloudTag.GATED)


def test_headless_display_keeps_latest_scenes():
    display = HeadlessDisplay(keep=2)
    scenes = [sample_scene(i) for i in range(3)]
    for scene in scenes:
        display.show(scene)

    assert display.frames_shown == 3
    assert display.scenes == scenes[1:]
    assert display.last_scene is scenes[2]
    assert not display.close_requested()


def test_headless_display_close_after():
    display = HeadlessDisplay(close_after=2)
    display.show(sample_scene())
    assert not display.close_requested()
    display.show(sample_scene())
    assert display.close_requested()

    other = HeadlessDisplay()
    assert other.last_scene is None
    other.request_close()
    assert other.close_requested()
    other.close()
    assert other.closed


def test_matplotlib_display_draws_each_tag(matplotlib_display):
    display = matplotlib_display
    display.show(sample_scene())
    display.figure.canvas.draw()

    assert set(display._artists) == {CloudTag.LIDAR, CloudTag.RADAR, CloudTag.GATED}
    # The NaN sentinel is not drawn
    xs, ys, zs = display._artists[CloudTag.LIDAR]._offsets3d
    assert len(xs) == 2
    np.testing.assert_allclose(ys, [10.0, 5.0])
    np.testing.assert_allclose(
        display._artists[CloudTag.RADAR].get_facecolor()[0][:3],
        np.array([227, 11, 92]) / 255.0,
    )


def test_matplotlib_display_replaces_previous_scene(matplotlib_display):
    display = matplotlib_display
    display.show(sample_scene())
    display.show(Scene(clouds=[SceneCloud(CloudTag.LIDAR, (255, 255, 255), [[1.0, 1.0, 1.0]])]))

    xs, _, _ = display._artists[CloudTag.LIDAR]._offsets3d
    assert len(xs) == 1
    # Tags absent from the new scene are cleared
    assert len(display._artists[CloudTag.RADAR]._offsets3d[0]) == 0
    assert len(display._artists[CloudTag.GATED]._offsets3d[0]) == 0


def test_matplotlib_display_close_requests(matplotlib_display):
    from matplotlib.backend_bases import CloseEvent, KeyEvent

    display = matplotlib_display
    canvas = display.figure.canvas

    canvas.callbacks.process("key_press_event", KeyEvent("key_press_event", canvas, "x"))
    assert not display.close_requested()
    canvas.callbacks.process("key_press_event", KeyEvent("key_press_event", canvas, "q"))
    assert display.close_requested()

    display._close_requested = False
    canvas.callbacks.process("close_event", CloseEvent("close_event", canvas))
    assert display.close_requested()
