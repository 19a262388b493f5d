import logging
import math
import numpy as np

from dataclasses import dataclass, replace
from racing_dqn_rl.track import CheckpointRing, Point, RaceEvent, Surface, SurfaceMap, Track
from typing import NamedTuple, Optional, Tuple

logger = logging.getLogger("root")

# (acceleration input, steering input) per discrete action.
# Any consumer of a trained policy has to use exactly this table.
ACTIONS = (
    (1.0, 0.0),  # 0: forward
    (-0.4, 0.0),  # 1: reverse (reduced force)
    (0.0, -1.0),  # 2: left
    (0.0, 1.0),  # 3: right
    (1.0, -1.0),  # 4: forward + left
    (1.0, 1.0),  # 5: forward + right
    (0.0, 0.0),  # 6: no-op
)
ACTION_NAMES = ("forward", "reverse", "left", "right", "forward_left", "forward_right", "noop")
FORWARD_ACTIONS = (0, 4, 5)
ACTION_SIZE = len(ACTIONS)

# short-range "danger" rays spanning +-90 degrees, long-range "anticipation" rays spanning +-30 degrees
DANGER_RAY_OFFSETS = np.deg2rad(np.arange(-90.0, 91.0, 15.0))
ANTICIPATION_RAY_OFFSETS = np.deg2rad(np.arange(-30.0, 31.0, 15.0))

BASE_FEATURES = 5
STATE_SIZE = BASE_FEATURES + len(DANGER_RAY_OFFSETS) + len(ANTICIPATION_RAY_OFFSETS)


@dataclass(frozen=True)
class VehicleState:
    x: float
    y: float
    angle: float = 0.0
    speed: float = 0.0

    @property
    def position(self) -> Point:
        return self.x, self.y


@dataclass
class Physics:
    max_speed: float = 300.0
    acceleration: float = 150.0
    friction: float = 50.0
    turn_speed_base: float = 3.0
    turn_speed_factor: float = 0.3
    min_steering_speed: float = 1.0
    bounce_factor: float = 0.3
    off_track_speed_factor: float = 0.5
    reverse_speed_factor: float = 0.5


@dataclass
class Sensors:
    danger_range: float = 200.0
    danger_reference_distance: float = 50.0
    anticipation_range: float = 900.0
    ray_step: float = 2.0


def action_inputs(action: int) -> Tuple[float, float]:
    if not 0 <= action < ACTION_SIZE:
        msg = f"Unknown action {action}, expected 0..{ACTION_SIZE - 1}"
        logger.error(msg)
        raise ValueError(msg)
    return ACTIONS[action]


def step(
        surface: SurfaceMap,
        vehicle: VehicleState,
        action: int,
        dt: float,
        physics: Optional[Physics] = None,
) -> Tuple[VehicleState, bool, Surface]:
    """
    Advances the vehicle kinematics by dt for the given action.
    Returns the next vehicle state, whether it collided (and was rolled back) and the
    surface sampled at the position before the step.
    """
    physics = physics or Physics()
    acceleration_input, steering_input = action_inputs(action)
    ground = surface.surface_at(vehicle.x, vehicle.y)

    speed = vehicle.speed + acceleration_input * physics.acceleration * dt

    # surface friction only acts while coasting
    friction = physics.friction
    if acceleration_input == 0.0:
        friction *= ground.friction

    if speed > 0:
        speed = max(0.0, speed - friction * dt)
    elif speed < 0:
        speed = min(0.0, speed + friction * dt)

    max_speed = physics.max_speed
    if ground is Surface.OFF_TRACK:
        max_speed *= physics.off_track_speed_factor
    speed = min(speed, max_speed)
    speed = max(speed, -max_speed * physics.reverse_speed_factor)

    # turning authority decreases with speed, reversing inverts the direction
    angle = vehicle.angle
    if abs(speed) > physics.min_steering_speed:
        speed_factor = 1.0 / (1.0 + abs(speed) / physics.max_speed * physics.turn_speed_factor)
        turn_rate = physics.turn_speed_base * speed_factor
        angle += steering_input * turn_rate * dt * math.copysign(1.0, speed)

    x = vehicle.x + math.cos(angle) * speed * dt
    y = vehicle.y + math.sin(angle) * speed * dt

    collided = surface.is_blocked(x, y)
    if collided:
        x, y = vehicle.x, vehicle.y
        speed *= -physics.bounce_factor

    return VehicleState(x, y, angle, speed), collided, ground


def cast_rays(surface: SurfaceMap, x: float, y: float, angles: np.ndarray, max_distance: float,
              ray_step: float = 2.0) -> np.ndarray:
    """
    Marches all rays at once in steps of ray_step and returns the distance at which each ray
    first leaves the drivable area (map boundary or wall), or max_distance if it never does.
    """
    distances = np.arange(0.0, max_distance, ray_step)
    angles = np.asarray(angles, dtype=np.float64)

    xs = x + np.cos(angles)[:, None] * distances[None, :]
    ys = y + np.sin(angles)[:, None] * distances[None, :]
    # truncate towards zero like an integer cast
    px = xs.astype(np.int64)
    py = ys.astype(np.int64)

    outside = (px < 0) | (px >= surface.width) | (py < 0) | (py >= surface.height)
    blocked = outside.copy()
    inside = ~outside
    blocked[inside] = surface.walls[py[inside], px[inside]]

    hit = blocked.any(axis=1)
    first = blocked.argmax(axis=1)
    return np.where(hit, distances[first], max_distance)


def observe(surface: SurfaceMap, vehicle: VehicleState, physics: Optional[Physics] = None,
            sensors: Optional[Sensors] = None) -> np.ndarray:
    """Builds the 23-value state vector of the vehicle."""
    physics = physics or Physics()
    sensors = sensors or Sensors()
    state = np.empty(STATE_SIZE, dtype=np.float32)

    state[0] = np.clip(vehicle.speed / physics.max_speed, -1.0, 1.0)
    state[1] = math.sin(vehicle.angle)
    state[2] = math.cos(vehicle.angle)
    state[3] = np.clip(vehicle.x / surface.width, 0.0, 1.0)
    state[4] = np.clip(vehicle.y / surface.height, 0.0, 1.0)

    # inverse distance: close walls give high values, saturating at 1
    danger = cast_rays(surface, vehicle.x, vehicle.y, vehicle.angle + DANGER_RAY_OFFSETS,
                       sensors.danger_range, sensors.ray_step)
    danger = 1.0 / (danger / sensors.danger_reference_distance + 0.1)
    end = BASE_FEATURES + len(DANGER_RAY_OFFSETS)
    state[BASE_FEATURES:end] = np.minimum(1.0, danger)

    clear = cast_rays(surface, vehicle.x, vehicle.y, vehicle.angle + ANTICIPATION_RAY_OFFSETS,
                      sensors.anticipation_range, sensors.ray_step)
    state[end:] = np.clip(clear / sensors.anticipation_range, 0.0, 1.0)

    return state


class StepOutcome(NamedTuple):
    previous: VehicleState
    vehicle: VehicleState
    collided: bool
    surface: Surface
    event: RaceEvent
    target: Point  # midpoint of the checkpoint that was expected before the step


class RaceSimulation:
    """
    One race on a track: the kinematic vehicle state plus the checkpoint ring,
    whose lifecycle spans many steps.
    """

    def __init__(
            self,
            track: Track,
            dt: float = 1.0 / 60.0,
            total_laps: int = 3,
            physics: Optional[Physics] = None,
            sensors: Optional[Sensors] = None,
    ):
        self.track = track
        self.surface = track.surface
        self.dt = dt
        self.total_laps = total_laps
        self.physics = physics or Physics()
        self.sensors = sensors or Sensors()
        self.ring: CheckpointRing = track.new_ring(total_laps)
        self.vehicle = VehicleState(*track.start)

    def reset(self, vehicle: Optional[VehicleState] = None) -> np.ndarray:
        self.ring.reset()
        self.vehicle = vehicle if vehicle is not None else VehicleState(*self.track.start)
        return self.observe()

    def observe(self) -> np.ndarray:
        return observe(self.surface, self.vehicle, self.physics, self.sensors)

    @property
    def finished(self) -> bool:
        return self.ring.finished

    @property
    def laps_completed(self) -> int:
        return self.ring.laps_completed

    def advance(self, action: int) -> StepOutcome:
        previous = self.vehicle
        target = self.ring.next_checkpoint.midpoint

        vehicle, collided, surface = step(self.surface, previous, action, self.dt, self.physics)
        self.vehicle = vehicle
        event = self.ring.update(previous.position, vehicle.position)

        return StepOutcome(previous, vehicle, collided, surface, event, target)

    def place(self, **changes) -> np.ndarray:
        """Moves the vehicle (e.g. for scenario setups) and returns the new observation."""
        self.vehicle = replace(self.vehicle, **changes)
        return self.observe()
