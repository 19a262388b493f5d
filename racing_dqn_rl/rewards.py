import logging
import math

from dataclasses import dataclass
from racing_dqn_rl.simulation import StepOutcome
from racing_dqn_rl.track import Point, RaceEvent, Surface

logger = logging.getLogger("root")


@dataclass
class RewardConfig:
    progress_scale: float = 0.1
    speed_bonus_scale: float = 0.0075
    wall_penalty: float = 10.0
    off_track_penalty: float = 2.0  # per second on the off-track surface
    step_penalty: float = 0.005
    idle_speed: float = 8.0
    idle_grace_steps: int = 30
    idle_penalty: float = 0.02
    checkpoint_bonus: float = 50.0
    lap_bonus: float = 200.0
    finish_bonus: float = 500.0
    boundary_penalty: float = 10.0


@dataclass
class StallConfig:
    check_interval: int = 75
    min_distance: float = 30.0
    max_strikes: int = 3
    penalty: float = 50.0


def distance(a: Point, b: Point) -> float:
    return math.hypot(a[0] - b[0], a[1] - b[1])


class RewardShaper:
    """Per-step training reward. Keeps the idle counter of the running episode."""

    def __init__(self, config: RewardConfig, dt: float):
        self.config = config
        self.dt = dt
        self.idle_counter = 0

    def reset(self):
        self.idle_counter = 0

    def __call__(self, outcome: StepOutcome) -> float:
        config = self.config
        speed = abs(outcome.vehicle.speed)

        # progress towards the midpoint of the checkpoint expected before the step
        progress = distance(outcome.target, outcome.previous.position) - \
            distance(outcome.target, outcome.vehicle.position)
        reward = progress * config.progress_scale
        if progress > 0.0:
            reward += speed * self.dt * config.speed_bonus_scale

        if outcome.collided:
            reward -= config.wall_penalty
        if outcome.surface is Surface.OFF_TRACK:
            reward -= config.off_track_penalty * self.dt

        reward -= config.step_penalty

        if speed < config.idle_speed and progress <= 0.0:
            self.idle_counter += 1
            if self.idle_counter > config.idle_grace_steps:
                reward -= config.idle_penalty
        else:
            self.idle_counter = 0

        reward += self._event_reward(outcome.event)
        return reward

    def _event_reward(self, event: RaceEvent) -> float:
        config = self.config
        if event is RaceEvent.CHECKPOINT:
            return config.checkpoint_bonus
        if event is RaceEvent.LAP_COMPLETED:
            return config.checkpoint_bonus + config.lap_bonus
        if event is RaceEvent.FINISHED:
            return config.checkpoint_bonus + config.lap_bonus + config.finish_bonus
        if event is RaceEvent.BOUNDARY_OUT_OF_ORDER:
            return -config.boundary_penalty
        return 0.0


class StallDetector:
    """
    Every check_interval steps the displacement since the previous check is compared to
    min_distance. Each insufficient move is a strike, a sufficient one clears them.
    """

    def __init__(self, config: StallConfig):
        self.config = config
        self.strikes = 0
        self.last_position = (0.0, 0.0)

    def reset(self, position: Point):
        self.strikes = 0
        self.last_position = position

    def check(self, step: int, position: Point) -> bool:
        """Returns True once the vehicle counts as stuck and the episode should end."""
        if step == 0 or step % self.config.check_interval != 0:
            return False

        if distance(position, self.last_position) < self.config.min_distance:
            self.strikes += 1
            if self.strikes >= self.config.max_strikes:
                logger.debug(f"Stalled at step {step} after {self.strikes} strikes")
                return True
        else:
            self.strikes = 0

        self.last_position = position
        return False
