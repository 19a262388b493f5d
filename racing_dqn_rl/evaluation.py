import logging
import os

from dataclasses import asdict, dataclass
from racing_dqn_rl.models.dqn import DQN
from racing_dqn_rl.models.misc import mean_or_zero
from racing_dqn_rl.simulation import RaceSimulation
from racing_dqn_rl.track import Surface
from typing import List, Optional

logger = logging.getLogger("root")


@dataclass
class ScoreWeights:
    finish_bonus: float = 100000.0
    step_penalty: float = 1.0
    wall_hit_penalty: float = 200.0
    off_track_penalty: float = 50.0


@dataclass
class SelectionMargins:
    finishes: int = 2
    steps_to_finish: float = 50.0
    score: float = 500.0


@dataclass
class EvalResult:
    episodes: int = 0
    finishes: int = 0
    finish_rate: float = 0.0
    avg_laps: float = 0.0
    avg_steps_finish: float = 0.0  # among finished episodes
    avg_steps_all: float = 0.0
    avg_wall_hits: float = 0.0
    avg_off_track_frames: float = 0.0
    avg_score: float = 0.0

    def as_dict(self) -> dict:
        return asdict(self)


def composite_score(finished: bool, steps: int, wall_hits: int, off_track_frames: int,
                    weights: ScoreWeights) -> float:
    score = weights.finish_bonus if finished else 0.0
    score -= steps * weights.step_penalty
    score -= wall_hits * weights.wall_hit_penalty
    score -= off_track_frames * weights.off_track_penalty
    return score


def evaluate_greedy(
        model: DQN,
        simulation: RaceSimulation,
        episodes: int = 20,
        max_steps: int = 7500,
        weights: Optional[ScoreWeights] = None,
) -> EvalResult:
    """
    Runs full episodes with exploration disabled and aggregates the race metrics.
    The model is put into evaluation mode and restored to its previous mode afterwards.
    """
    weights = weights or ScoreWeights()
    was_training = model.training
    model.set_mode(training=False)

    laps, steps_all, steps_finished, wall_hits, off_track_frames, scores = [], [], [], [], [], []
    try:
        for _ in range(episodes):
            state = simulation.reset()
            hits = 0
            off_track = 0
            steps = 0

            while not simulation.finished and steps < max_steps:
                outcome = simulation.advance(model.greedy_action(state))
                hits += int(outcome.collided)
                off_track += int(outcome.surface is Surface.OFF_TRACK)
                steps += 1
                state = simulation.observe()

            finished = simulation.finished
            laps.append(simulation.laps_completed)
            steps_all.append(steps)
            wall_hits.append(hits)
            off_track_frames.append(off_track)
            scores.append(composite_score(finished, steps, hits, off_track, weights))
            if finished:
                steps_finished.append(steps)
    finally:
        model.set_mode(training=was_training)

    return EvalResult(
        episodes=episodes,
        finishes=len(steps_finished),
        finish_rate=len(steps_finished) / episodes if episodes > 0 else 0.0,
        avg_laps=mean_or_zero(laps),
        avg_steps_finish=mean_or_zero(steps_finished),
        avg_steps_all=mean_or_zero(steps_all),
        avg_wall_hits=mean_or_zero(wall_hits),
        avg_off_track_frames=mean_or_zero(off_track_frames),
        avg_score=mean_or_zero(scores),
    )


class ModelSelector:
    """
    Keeps three independent best checkpoints, each only replaced when its criterion improves
    by more than a margin:
        best_finish_rate.pt - most finishes (a higher finish rate breaks close counts)
        best_time.pt        - fewest mean steps among finishing episodes
        best_score.pt       - highest mean composite score
    """

    FINISH_RATE = "best_finish_rate"
    TIME = "best_time"
    SCORE = "best_score"

    def __init__(self, model_dir: str, margins: Optional[SelectionMargins] = None):
        self.model_dir = model_dir
        self.margins = margins or SelectionMargins()
        self.best_finishes = None
        self.best_finish_rate = None
        self.best_avg_steps_finish = None
        self.best_score = None

    def path(self, criterion: str) -> str:
        return os.path.join(self.model_dir, criterion + ".pt")

    def improves_finishes(self, result: EvalResult) -> bool:
        if self.best_finishes is None:
            return True
        if result.finishes >= self.best_finishes + self.margins.finishes:
            return True
        return result.finishes > self.best_finishes and result.finish_rate > self.best_finish_rate

    def improves_time(self, result: EvalResult) -> bool:
        if result.finishes == 0:
            return False
        if self.best_avg_steps_finish is None:
            return True
        return result.avg_steps_finish + self.margins.steps_to_finish < self.best_avg_steps_finish

    def improves_score(self, result: EvalResult, previous_finish_rate: Optional[float]) -> bool:
        if self.best_score is None:
            return True
        if result.avg_score > self.best_score + self.margins.score:
            return True
        return result.avg_score > self.best_score and \
            previous_finish_rate is not None and result.finish_rate > previous_finish_rate

    def update(self, result: EvalResult, model: DQN) -> List[str]:
        """Persists the model for every criterion it improves; returns the updated criteria."""
        updated = []
        previous_finish_rate = self.best_finish_rate

        if self.improves_finishes(result):
            self.best_finishes = result.finishes
            self.best_finish_rate = result.finish_rate
            model.save_checkpoint(self.path(self.FINISH_RATE))
            logger.info(f"Updated {self.FINISH_RATE}.pt (finishes={result.finishes}, "
                        f"finish_rate={result.finish_rate:.3f})")
            updated.append(self.FINISH_RATE)

        if self.improves_time(result):
            self.best_avg_steps_finish = result.avg_steps_finish
            model.save_checkpoint(self.path(self.TIME))
            logger.info(f"Updated {self.TIME}.pt (avg_steps_finish={result.avg_steps_finish:.1f})")
            updated.append(self.TIME)

        if self.improves_score(result, previous_finish_rate):
            self.best_score = result.avg_score
            model.save_checkpoint(self.path(self.SCORE))
            logger.info(f"Updated {self.SCORE}.pt (avg_score={result.avg_score:.1f})")
            updated.append(self.SCORE)

        return updated
