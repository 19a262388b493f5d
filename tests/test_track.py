"""
Unit tests for the surface map, the checkpoint ring and the track builders.
"""

import numpy as np
import pytest

from matplotlib import image as mpimg
from racing_dqn_rl.track import (
    OFF_TRACK_COLOR, TRACK_COLOR, WALL_COLOR, CheckpointRing, RaceEvent, Surface, SurfaceMap, Track,
    TrackLoadError, friction_multiplier, segments_intersect,
)

# boundary at x = 0, checkpoints at x = 10 and x = 20, all spanning y in [-5, 5]
LINE_SEGMENTS = [((0.0, -5.0), (0.0, 5.0)), ((10.0, -5.0), (10.0, 5.0)), ((20.0, -5.0), (20.0, 5.0))]


def cross(ring, x):
    """Moves horizontally over the vertical line at x."""
    return ring.update((x - 1.0, 0.0), (x + 1.0, 0.0))


def test_friction_multipliers():
    """Test the friction multiplier of every surface color."""
    assert friction_multiplier(WALL_COLOR) == 999.0
    assert friction_multiplier(OFF_TRACK_COLOR) == 3.0
    assert friction_multiplier(TRACK_COLOR) == 1.0
    assert friction_multiplier((200, 10, 10)) == 1.0, "Unknown colors should count as track"


def test_surface_map_lookups():
    """Test classification and out-of-bounds behaviour of the surface map."""
    pixels = np.zeros((10, 20, 3), dtype=np.uint8)
    pixels[:] = TRACK_COLOR
    pixels[:, 15:] = WALL_COLOR
    pixels[0:2, 0:5] = OFF_TRACK_COLOR
    surface = SurfaceMap(pixels)

    assert surface.width == 20 and surface.height == 10
    assert surface.surface_at(3.7, 1.2) is Surface.OFF_TRACK
    assert surface.surface_at(7.0, 5.0) is Surface.TRACK
    assert surface.surface_at(16.0, 5.0) is Surface.WALL
    assert surface.is_blocked(16.0, 5.0)
    assert not surface.is_blocked(7.0, 5.0)

    # outside the map: blocked for movement, but normal track for friction
    assert surface.is_blocked(-1.0, 5.0)
    assert surface.is_blocked(5.0, 10.0)
    assert surface.surface_at(-1.0, 5.0) is Surface.TRACK
    assert surface.friction_multiplier(25.0, 5.0) == 1.0


def test_surface_map_rejects_bad_shape():
    with pytest.raises(TrackLoadError):
        SurfaceMap(np.zeros((10, 10)))


def test_surface_map_from_image(tmp_path):
    """Test loading a surface map from a PNG file."""
    pixels = np.zeros((12, 16, 3), dtype=np.uint8)
    pixels[:] = TRACK_COLOR
    pixels[:, :2] = WALL_COLOR
    pixels[5:, 8:] = OFF_TRACK_COLOR
    path = tmp_path / "track.png"
    mpimg.imsave(str(path), pixels)

    surface = SurfaceMap.from_image(str(path))
    assert (surface.width, surface.height) == (16, 12)
    assert surface.surface_at(0.5, 3.0) is Surface.WALL
    assert surface.surface_at(10.0, 8.0) is Surface.OFF_TRACK
    assert surface.surface_at(5.0, 2.0) is Surface.TRACK


def test_missing_image_raises_track_load_error(tmp_path):
    config = {
        "type": "image",
        "image_path": str(tmp_path / "missing.png"),
        "checkpoints": [[[0, 0], [0, 5]], [[5, 0], [5, 5]]],
        "start": {"x": 1, "y": 1},
    }
    with pytest.raises(TrackLoadError):
        Track.from_config(config)


def test_unknown_track_type():
    with pytest.raises(ValueError):
        Track.from_config({"type": "figure-eight"})


def test_segment_intersection():
    """Test crossing, disjoint and parallel segments."""
    assert segments_intersect((0, 0), (10, 10), (0, 10), (10, 0))
    assert not segments_intersect((0, 0), (1, 1), (5, 0), (5, 10))
    assert not segments_intersect((0, 0), (10, 0), (0, 1), (10, 1)), "Parallel segments never intersect"
    # touching an end point counts
    assert segments_intersect((-1, 5), (1, 5), (0, -5), (0, 5))


def test_ring_lap_sequence():
    """Test that checkpoints must be crossed in order and laps are counted at the boundary."""
    ring = CheckpointRing(LINE_SEGMENTS, total_laps=2)
    assert ring.status == "not started"

    assert cross(ring, 0.0) is RaceEvent.STARTED
    assert ring.current_lap == 1
    assert ring.next_index == 1

    assert cross(ring, 10.0) is RaceEvent.CHECKPOINT
    assert cross(ring, 20.0) is RaceEvent.CHECKPOINT
    assert ring.next_index == 0
    assert cross(ring, 0.0) is RaceEvent.LAP_COMPLETED
    assert ring.laps_completed == 1
    assert ring.current_lap == 2
    assert not any(checkpoint.crossed for checkpoint in ring.checkpoints)

    assert cross(ring, 10.0) is RaceEvent.CHECKPOINT
    assert cross(ring, 20.0) is RaceEvent.CHECKPOINT
    assert cross(ring, 0.0) is RaceEvent.FINISHED
    assert ring.finished
    assert ring.laps_completed == 2
    assert ring.status == "finished"

    # nothing changes after the finish
    assert cross(ring, 10.0) is RaceEvent.NONE
    assert ring.laps_completed == 2


def test_ring_only_tests_expected_checkpoint():
    """Test that skipping a checkpoint is ignored and a premature boundary crossing is flagged."""
    ring = CheckpointRing(LINE_SEGMENTS, total_laps=3)
    cross(ring, 0.0)

    assert cross(ring, 20.0) is RaceEvent.NONE, "Checkpoint 2 is not expected yet"
    assert ring.next_index == 1

    assert cross(ring, 0.0) is RaceEvent.BOUNDARY_OUT_OF_ORDER
    assert ring.laps_completed == 0
    assert ring.next_index == 1


def test_ring_reset():
    ring = CheckpointRing(LINE_SEGMENTS, total_laps=1)
    cross(ring, 0.0)
    cross(ring, 10.0)
    ring.reset()
    assert not ring.started
    assert ring.next_index == 0
    assert ring.laps_completed == 0
    assert not ring.checkpoints[1].crossed


def test_ring_needs_two_checkpoints():
    with pytest.raises(ValueError):
        CheckpointRing(LINE_SEGMENTS[:1])


def test_oval_track_layout(small_track):
    """Test that the procedural oval has a drivable start on asphalt and walls in the infield."""
    surface = small_track.surface
    x, y, angle = small_track.start

    assert surface.surface_at(x, y) is Surface.TRACK
    assert not surface.is_blocked(x, y)
    assert angle == 0.0
    assert surface.is_blocked(surface.width / 2, surface.height / 2), "Infield should be a wall"
    assert surface.is_blocked(1.0, 1.0), "Corners should be walls"
    assert len(small_track.checkpoints) == 6

    # the boundary is a vertical segment just ahead of the start
    (bx1, by1), (bx2, by2) = small_track.checkpoints[0]
    assert bx1 == pytest.approx(bx2)
    assert bx1 > x
    assert min(by1, by2) < y < max(by1, by2)


def test_oval_must_fit():
    with pytest.raises(TrackLoadError):
        Track.from_config({"type": "oval", "width": 200, "height": 200, "radius_x": 110, "radius_y": 100})
