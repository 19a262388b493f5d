import enum
import logging
import math
import numpy as np

from dataclasses import dataclass
from matplotlib import image as mpimg
from typing import List, Optional, Sequence, Tuple

logger = logging.getLogger("root")

Point = Tuple[float, float]
Segment = Tuple[Point, Point]

# pixel colors of the surface map (RGB)
WALL_COLOR = (15, 15, 15)
TRACK_COLOR = (35, 35, 35)
OFF_TRACK_COLOR = (34, 177, 76)


class TrackLoadError(Exception):
    """Raised when a surface map cannot be loaded or built."""


class Surface(enum.Enum):
    """
    The recognized surface classes, valued by their friction multiplier.
    Any unrecognized pixel color is treated as normal track.
    """
    TRACK = 1.0
    OFF_TRACK = 3.0
    WALL = 999.0

    @property
    def friction(self) -> float:
        return self.value


def classify_color(color: Sequence[int]) -> Surface:
    rgb = tuple(int(c) for c in color[:3])
    if rgb == WALL_COLOR:
        return Surface.WALL
    if rgb == OFF_TRACK_COLOR:
        return Surface.OFF_TRACK
    return Surface.TRACK


def friction_multiplier(color: Sequence[int]) -> float:
    return classify_color(color).friction


# surface codes used in the classified grid
_TRACK, _OFF_TRACK, _WALL = 0, 1, 2
_CODE_TO_SURFACE = {_TRACK: Surface.TRACK, _OFF_TRACK: Surface.OFF_TRACK, _WALL: Surface.WALL}


class SurfaceMap:
    """
    Read-only, color-coded 2D surface map in pixel space (x to the right, y downwards).
    The pixels are classified once on construction, lookups only index the class grid.
    """

    def __init__(self, pixels: np.ndarray):
        pixels = np.asarray(pixels)
        if pixels.ndim != 3 or pixels.shape[2] < 3:
            msg = f"Surface map must be an (height, width, 3|4) array, got shape {pixels.shape}"
            logger.error(msg)
            raise TrackLoadError(msg)

        rgb = pixels[:, :, :3].astype(np.int16)
        self.pixels = rgb.astype(np.uint8)
        self.height, self.width = rgb.shape[:2]

        self.grid = np.full((self.height, self.width), _TRACK, dtype=np.uint8)
        self.grid[np.all(rgb == OFF_TRACK_COLOR, axis=-1)] = _OFF_TRACK
        self.grid[np.all(rgb == WALL_COLOR, axis=-1)] = _WALL
        self.walls = self.grid == _WALL

    @classmethod
    def from_image(cls, path: str) -> "SurfaceMap":
        logger.info(f"Loading surface map from {path}")
        try:
            pixels = mpimg.imread(path)
        except (OSError, ValueError, SyntaxError) as e:
            msg = f"Could not load surface map {path}: {e}"
            logger.error(msg)
            raise TrackLoadError(msg) from e

        # PNGs are read as floats in [0, 1]
        if np.issubdtype(pixels.dtype, np.floating):
            pixels = np.round(pixels * 255.0).astype(np.uint8)
        if pixels.ndim == 2:
            pixels = np.stack([pixels] * 3, axis=-1)
        return cls(pixels)

    def in_bounds(self, x: float, y: float) -> bool:
        px, py = int(x), int(y)
        return 0 <= px < self.width and 0 <= py < self.height

    def surface_at(self, x: float, y: float) -> Surface:
        """Surface class below (x, y); positions outside the map count as normal track."""
        if not self.in_bounds(x, y):
            return Surface.TRACK
        return _CODE_TO_SURFACE[int(self.grid[int(y), int(x)])]

    def friction_multiplier(self, x: float, y: float) -> float:
        return self.surface_at(x, y).friction

    def is_blocked(self, x: float, y: float) -> bool:
        """True if (x, y) is not drivable, i.e. outside the map or on a wall."""
        if not self.in_bounds(x, y):
            return True
        return bool(self.walls[int(y), int(x)])


def segments_intersect(p1: Point, p2: Point, p3: Point, p4: Point, eps: float = 1e-3) -> bool:
    """
    Parametric intersection test of the segments p1-p2 and p3-p4.
    Near-parallel segments (|denominator| < eps) never intersect.
    """
    x1, y1 = p1
    x2, y2 = p2
    x3, y3 = p3
    x4, y4 = p4

    denom = (x1 - x2) * (y3 - y4) - (y1 - y2) * (x3 - x4)
    if abs(denom) < eps:
        return False

    t = ((x1 - x3) * (y3 - y4) - (y1 - y3) * (x3 - x4)) / denom
    u = -((x1 - x2) * (y1 - y3) - (y1 - y2) * (x1 - x3)) / denom
    return 0.0 <= t <= 1.0 and 0.0 <= u <= 1.0


@dataclass
class Checkpoint:
    start: Point
    end: Point
    crossed: bool = False

    @property
    def midpoint(self) -> Point:
        return (self.start[0] + self.end[0]) * 0.5, (self.start[1] + self.end[1]) * 0.5

    def is_crossed_by(self, prev_pos: Point, current_pos: Point) -> bool:
        return segments_intersect(prev_pos, current_pos, self.start, self.end)


class RaceEvent(enum.Enum):
    NONE = "none"
    STARTED = "started"
    CHECKPOINT = "checkpoint"
    LAP_COMPLETED = "lap_completed"
    FINISHED = "finished"
    BOUNDARY_OUT_OF_ORDER = "boundary_out_of_order"


class CheckpointRing:
    """
    Lap state machine over an ordered ring of checkpoints, index 0 being the lap boundary.

    Only the next expected checkpoint is tested for a crossing. The first boundary crossing
    starts lap 1. Afterwards the boundary only completes a lap if all other checkpoints were
    crossed since the last boundary crossing; the race is finished after total_laps laps.
    """

    def __init__(self, segments: Sequence[Segment], total_laps: int = 3):
        if len(segments) < 2:
            msg = f"A checkpoint ring needs the boundary and at least one checkpoint, got {len(segments)}"
            logger.error(msg)
            raise ValueError(msg)
        if total_laps < 1:
            raise ValueError(f"total_laps must be positive, got {total_laps}")

        self.checkpoints = [Checkpoint(tuple(s), tuple(e)) for s, e in segments]
        self.total_laps = total_laps
        self.reset()

    def reset(self):
        for checkpoint in self.checkpoints:
            checkpoint.crossed = False
        self.next_index = 0
        self.started = False
        self.laps_completed = 0
        self.finished = False

    def __len__(self):
        return len(self.checkpoints)

    @property
    def boundary(self) -> Checkpoint:
        return self.checkpoints[0]

    @property
    def next_checkpoint(self) -> Checkpoint:
        return self.checkpoints[self.next_index]

    @property
    def current_lap(self) -> int:
        """1-based number of the lap in progress, 0 before the start."""
        if not self.started:
            return 0
        return min(self.laps_completed + 1, self.total_laps)

    @property
    def status(self) -> str:
        if self.finished:
            return "finished"
        if not self.started:
            return "not started"
        return f"lap {self.current_lap} of {self.total_laps}"

    def update(self, prev_pos: Point, current_pos: Point) -> RaceEvent:
        """Advances the state machine for a move from prev_pos to current_pos."""
        if self.finished:
            return RaceEvent.NONE

        expected_index = self.next_index
        checkpoint = self.checkpoints[expected_index]

        if checkpoint.is_crossed_by(prev_pos, current_pos):
            if expected_index == 0:
                return self._cross_boundary()
            checkpoint.crossed = True
            self.next_index = (expected_index + 1) % len(self.checkpoints)
            return RaceEvent.CHECKPOINT

        if expected_index != 0 and self.boundary.is_crossed_by(prev_pos, current_pos):
            return RaceEvent.BOUNDARY_OUT_OF_ORDER

        return RaceEvent.NONE

    def _cross_boundary(self) -> RaceEvent:
        if not self.started:
            self.started = True
            self.next_index = 1
            return RaceEvent.STARTED

        if not all(checkpoint.crossed for checkpoint in self.checkpoints[1:]):
            # corner cut, the ring is not advanced
            return RaceEvent.NONE

        self.laps_completed += 1
        for checkpoint in self.checkpoints:
            checkpoint.crossed = False
        self.next_index = 1

        if self.laps_completed >= self.total_laps:
            self.finished = True
            return RaceEvent.FINISHED
        return RaceEvent.LAP_COMPLETED


@dataclass
class Track:
    """A surface map together with its checkpoint layout and the start pose (x, y, angle)."""
    surface: SurfaceMap
    checkpoints: List[Segment]
    start: Tuple[float, float, float]
    name: str = "track"

    def new_ring(self, total_laps: int) -> CheckpointRing:
        return CheckpointRing(self.checkpoints, total_laps)

    @classmethod
    def from_config(cls, track_config: dict) -> "Track":
        """
        Builds the track described by the 'track' section of the environment configuration.
        Supported types are "oval" (procedural) and "image" (surface map file).
        """
        track_config = dict(track_config or {})
        track_type = track_config.pop("type", "oval")

        if track_type == "oval":
            return build_oval_track(**track_config)
        if track_type == "image":
            return _load_image_track(**track_config)

        msg = f"Unknown track type: {track_type}"
        logger.error(msg)
        raise ValueError(msg)


def _load_image_track(image_path: str, checkpoints: List[Segment], start: dict, name: Optional[str] = None):
    surface = SurfaceMap.from_image(image_path)
    segments = [(tuple(s), tuple(e)) for s, e in checkpoints]
    start_pose = (float(start["x"]), float(start["y"]), float(start.get("angle", 0.0)))
    if surface.is_blocked(start_pose[0], start_pose[1]):
        msg = f"Start position {start_pose[:2]} is not drivable on {image_path}"
        logger.error(msg)
        raise TrackLoadError(msg)
    return Track(surface, segments, start_pose, name=name or image_path)


def build_oval_track(
        width: int = 900,
        height: int = 900,
        radius_x: float = 340.0,
        radius_y: float = 300.0,
        track_width: float = 90.0,
        off_track_width: float = 25.0,
        n_checkpoints: int = 8,
        start_offset: float = 20.0,
        name: str = "oval",
) -> Track:
    """
    Builds a closed elliptical circuit: asphalt band around the centerline ellipse,
    an off-track band on both sides and walls everywhere else.
    Driving direction is clockwise on screen, starting at the top heading to the right.
    """
    if radius_x + track_width / 2 + off_track_width >= width / 2 or \
            radius_y + track_width / 2 + off_track_width >= height / 2:
        msg = "Oval does not fit into the surface map"
        logger.error(msg)
        raise TrackLoadError(msg)

    cx, cy = width / 2.0, height / 2.0
    mean_radius = (radius_x + radius_y) / 2.0
    half_track = track_width / 2.0
    half_total = half_track + off_track_width

    # approximate lateral distance to the centerline ellipse
    ys, xs = np.mgrid[0:height, 0:width]
    r = np.sqrt(((xs + 0.5 - cx) / radius_x) ** 2 + ((ys + 0.5 - cy) / radius_y) ** 2)
    lateral = np.abs(r - 1.0) * mean_radius

    pixels = np.empty((height, width, 3), dtype=np.uint8)
    pixels[:] = WALL_COLOR
    pixels[lateral <= half_total] = OFF_TRACK_COLOR
    pixels[lateral <= half_track] = TRACK_COLOR

    # radial segments spanning asphalt and off-track bands, index 0 at the top
    checkpoints = []
    for i in range(n_checkpoints):
        theta = -math.pi / 2 + 2 * math.pi * i / n_checkpoints
        scale_in = 1.0 - half_total / mean_radius
        scale_out = 1.0 + half_total / mean_radius
        inner = (cx + radius_x * scale_in * math.cos(theta), cy + radius_y * scale_in * math.sin(theta))
        outer = (cx + radius_x * scale_out * math.cos(theta), cy + radius_y * scale_out * math.sin(theta))
        checkpoints.append((inner, outer))

    start = (cx - start_offset, cy - radius_y, 0.0)
    logger.info(f"Built oval track {width}x{height} with {n_checkpoints} checkpoints")
    return Track(SurfaceMap(pixels), checkpoints, start, name=name)
