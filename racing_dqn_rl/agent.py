import logging
import os
import random
import threading
import time

import pandas as pd
import torch

from dataclasses import dataclass, field, fields
from racing_dqn_rl.evaluation import EvalResult, ModelSelector, ScoreWeights, SelectionMargins, evaluate_greedy
from racing_dqn_rl.models.dqn import DQN
from racing_dqn_rl.models.misc import mean_or_zero
from racing_dqn_rl.models.replay_buffer import ReplayBuffer
from racing_dqn_rl.plotting import plot_eval_results, plot_training_infos
from racing_dqn_rl.rewards import RewardConfig, RewardShaper, StallConfig, StallDetector
from racing_dqn_rl.simulation import ACTION_NAMES, ACTION_SIZE, STATE_SIZE, Physics, RaceSimulation, Sensors
from racing_dqn_rl.track import Track
from typing import Optional

logger = logging.getLogger("root")


def build_dataclass(cls, values: Optional[dict], section: str):
    """Instantiates a config dataclass from a (possibly partial) mapping, rejecting unknown keys."""
    values = dict(values or {})
    known = {f.name for f in fields(cls) if f.init}
    unknown = sorted(set(values) - known)
    if unknown:
        msg = f"Unknown keys in configuration section '{section}': {unknown}"
        logger.error(msg)
        raise ValueError(msg)
    return cls(**values)


class StopToken:
    """Cooperative cancellation flag, set once (e.g. from a signal handler) and polled by the training loop."""

    def __init__(self):
        self._event = threading.Event()

    def request(self):
        self._event.set()

    @property
    def requested(self) -> bool:
        return self._event.is_set()


class ResultMemory:
    """Append-only per-episode statistics of a training run."""

    def __init__(self: "ResultMemory"):
        logger.info("Initializing result memory...")
        self.rewards = []
        self.lengths = []
        self.losses = []
        self.laps = []
        self.finishes = []

    def add(self, reward: float, length: int, loss: float, laps: int, finished: bool):
        self.rewards.append(reward)
        self.lengths.append(length)
        self.losses.append(loss)
        self.laps.append(laps)
        self.finishes.append(bool(finished))

    def trailing_finish_rate(self, window: int) -> Optional[float]:
        if len(self.finishes) < window:
            return None
        return sum(self.finishes[-window:]) / window

    def trailing_mean_reward(self, window: int) -> float:
        return mean_or_zero(self.rewards[-window:])

    def to_frame(self, first_episode: int = 1, last_episode: Optional[int] = None) -> pd.DataFrame:
        """Rows of the episodes first_episode..last_episode (1-based, inclusive)."""
        last_episode = len(self) if last_episode is None else min(last_episode, len(self))
        first_episode = max(1, first_episode)
        window = slice(first_episode - 1, last_episode)
        return pd.DataFrame({
            "episode": list(range(first_episode, last_episode + 1)),
            "reward": self.rewards[window],
            "length": self.lengths[window],
            "avg_loss": self.losses[window],
            "laps": self.laps[window],
            "finished": [int(f) for f in self.finishes[window]],
        })

    def __len__(self):
        return len(self.rewards)


@dataclass
class LearningRateSchedule:
    """
    One-way learning rate drops: once after the first finished race and once when the
    finish rate over the last finish_rate_window episodes reaches finish_rate_threshold.
    """
    after_first_finish: float = 3e-4
    after_finish_rate: float = 1e-4
    finish_rate_window: int = 20
    finish_rate_threshold: float = 0.5
    dropped_on_first_finish: bool = field(default=False, init=False)
    dropped_on_finish_rate: bool = field(default=False, init=False)

    def update(self, current_lr: float, finished: bool, memory: ResultMemory) -> Optional[float]:
        """Returns the new learning rate if a drop fires for the latest episode, else None."""
        new_lr = None

        if finished and not self.dropped_on_first_finish:
            self.dropped_on_first_finish = True
            new_lr = min(current_lr, self.after_first_finish)
            logger.info(f"LR schedule: first finish detected, lowering LR to {new_lr:.2e}")

        if not self.dropped_on_finish_rate:
            finish_rate = memory.trailing_finish_rate(self.finish_rate_window)
            if finish_rate is not None and finish_rate >= self.finish_rate_threshold:
                self.dropped_on_finish_rate = True
                new_lr = min(new_lr if new_lr is not None else current_lr, self.after_finish_rate)
                logger.info(f"LR schedule: finish rate (last {self.finish_rate_window}) = {finish_rate:.2f}, "
                            f"lowering LR to {new_lr:.2e}")

        return new_lr


class Agent:
    def __init__(
            self: "Agent",
            save_path: str,
            track: Track,
            dt: float = 1.0 / 60.0,
            max_steps: int = 7500,
            total_laps: int = 3,
            train_episodes: Optional[int] = None,
            log_interval: int = 10,
            milestone_interval: int = 50,
            eval_episodes: int = 20,
            eval_max_steps: Optional[int] = None,
            batch_size: int = 32,
            replay_capacity: int = 50000,
            warmup_episodes: int = 5,
            train_every_n_steps: int = 3,
            epsilon_start: float = 1.0,
            epsilon_end: float = 0.005,
            epsilon_decay: float = 0.995,
            rewards: dict = None,
            stall: dict = None,
            physics: dict = None,
            sensors: dict = None,
            score_weights: dict = None,
            selection_margins: dict = None,
            lr_schedule: dict = None,
            model_config: dict = None,
            seed: int = 0,
    ):
        logger.info("Initializing agent...")

        # initialize overall agent attributes
        self.max_steps = max_steps
        self.train_episodes = train_episodes
        self.log_interval = log_interval
        self.milestone_interval = milestone_interval
        self.eval_episodes = eval_episodes
        self.eval_max_steps = eval_max_steps or max_steps
        self.batch_size = batch_size
        self.warmup_episodes = warmup_episodes
        self.train_every_n_steps = train_every_n_steps
        self.epsilon = epsilon_start
        self.epsilon_end = epsilon_end
        self.epsilon_decay = epsilon_decay
        self.seed = seed
        self.rng = random.Random(seed)

        # initialize paths
        self.model_save_path = os.path.join(save_path, "model")
        self.stats_save_path = os.path.join(save_path, "stats")
        self.plots_save_path = os.path.join(save_path, "plots")
        for path in (self.model_save_path, self.stats_save_path, self.plots_save_path):
            os.makedirs(path, exist_ok=True)

        # initialize simulations, one for training and one for greedy evaluation
        physics = build_dataclass(Physics, physics, "physics")
        sensors = build_dataclass(Sensors, sensors, "sensors")
        self.simulation = RaceSimulation(track, dt, total_laps, physics, sensors)
        self.eval_simulation = RaceSimulation(track, dt, total_laps, physics, sensors)

        # initialize reward shaping and stall detection
        self.reward_shaper = RewardShaper(build_dataclass(RewardConfig, rewards, "rewards"), dt)
        self.stall_detector = StallDetector(build_dataclass(StallConfig, stall, "stall"))

        # initialize evaluation and model selection
        self.score_weights = build_dataclass(ScoreWeights, score_weights, "score_weights")
        self.selector = ModelSelector(
            self.model_save_path, build_dataclass(SelectionMargins, selection_margins, "selection_margins"))
        self.lr_schedule = build_dataclass(LearningRateSchedule, lr_schedule, "lr_schedule")

        # initialize replay buffer and result memories
        self.replay_buffer = ReplayBuffer(replay_capacity, rng=random.Random(seed + 1))
        self.train_result_memory = ResultMemory()
        self.eval_results = []

        # initialize device if it is known
        model_config = model_config or {}
        self._init_device(model_config)

        # initialize model
        self._init_model(model_config)

        logger.info("Successfully initialized agent")

    def _init_device(self, model_config):
        """
        Initializes the PyTorch device to be used for training the agent.
        Checks if the device name given as hyperparameter device is known and allowed.
        If "auto" is provided, it checks whether CUDA is available or not.
        """
        device_name = model_config.get("device", "cpu")
        devices = ["cpu", "cuda", "auto"]

        if device_name not in devices:
            msg = f"Unknown device name: {device_name}"
            logger.error(msg)
            raise ValueError(msg)

        self.device = (
            torch.device("cuda" if torch.cuda.is_available() else "cpu")
            if device_name in ["auto", "cuda"]
            else torch.device(device_name)
        )

        if device_name == "cuda" and not torch.cuda.is_available():
            logger.warning(
                f"Specified device cuda but cuda is not available! "
                f"torch.cuda.is_available()=={torch.cuda.is_available()}"
            )
        logger.info(f"Using device {self.device}")

    def _init_model(self, model_config):
        """
        Initializes the DQN model from the given hyperparameters.
        """
        model_parameters = dict(model_config.get("parameters") or {})
        self.model = DQN(state_size=STATE_SIZE, action_size=ACTION_SIZE, device=self.device, **model_parameters)

    def resume(self, pretrained_path: str, learning_rate: Optional[float] = None):
        """
        Loads a previously saved policy (the target network is hard-copied from it) and
        optionally overrides the learning rate. Raises CheckpointError if loading fails.
        """
        self.model.load_checkpoint(pretrained_path)
        if learning_rate is not None:
            self.model.set_learning_rate(learning_rate)
        logger.info(f"Resumed from {pretrained_path} with LR {self.model.learning_rate:.2e}")

    def select_action(self, state) -> int:
        """Epsilon-greedy action selection."""
        if self.rng.random() < self.epsilon:
            return self.rng.randrange(ACTION_SIZE)
        return self.model.greedy_action(state)

    def train(self, stop_token: Optional[StopToken] = None):
        """
        Runs episodes until the stop token is set (or train_episodes are done).
        Every milestone_interval episodes the policy and statistics are saved and
        the greedy evaluation drives the best-model selection.
        """
        stop_token = stop_token or StopToken()
        self.model.set_mode(training=True)
        self.training_start = time.monotonic()

        episode = len(self.train_result_memory)
        while not stop_token.requested:
            episode += 1
            reward, steps, loss, laps, finished = self.run_episode(episode, stop_token)
            self._finish_episode(reward, steps, loss, laps, finished)

            if stop_token.requested:
                logger.info(f"Interrupted during episode {episode}")
                break

            if episode % self.log_interval == 0:
                self._log_episode_summary(episode)

            if episode % self.milestone_interval == 0:
                self._milestone(episode)

            if self.train_episodes is not None and episode >= self.train_episodes:
                break

        self._save_model("model_final")
        if len(self.train_result_memory) > 0:
            plot_training_infos(self.train_result_memory.to_frame(),
                                os.path.join(self.plots_save_path, "all_in_one.png"))
        logger.info(f"Finished training after {episode} episodes")

    def run_episode(self, episode: int, stop_token: Optional[StopToken] = None):
        """
        Runs one training episode and returns (reward, steps, mean loss, laps, finished).
        """
        stop_token = stop_token or StopToken()
        simulation = self.simulation

        state = simulation.reset()
        self.reward_shaper.reset()
        self.stall_detector.reset(simulation.vehicle.position)

        episode_reward = 0.0
        steps = 0
        losses = []

        while not simulation.finished and steps < self.max_steps and not stop_token.requested:
            if self.stall_detector.check(steps, simulation.vehicle.position):
                episode_reward -= self.stall_detector.config.penalty
                logger.debug(f"Episode {episode} ended early, vehicle stuck after {steps} steps")
                break

            action = self.select_action(state)
            outcome = simulation.advance(action)
            reward = self.reward_shaper(outcome)

            episode_reward += reward
            steps += 1

            next_state = simulation.observe()
            done = simulation.finished or steps >= self.max_steps
            self.replay_buffer.push(state, action, reward, next_state, done)

            if self._should_train(episode, steps):
                losses.append(self.model.train_step(self.replay_buffer.sample(self.batch_size)))

            if logger.isEnabledFor(logging.DEBUG):
                logger.debug(f"step {steps}: action = {ACTION_NAMES[action]}, reward = {reward:.3f}, "
                             f"event = {outcome.event.value}")
            state = next_state

        return episode_reward, steps, mean_or_zero(losses), simulation.laps_completed, simulation.finished

    def _should_train(self, episode: int, steps: int) -> bool:
        return (episode >= self.warmup_episodes
                and self.replay_buffer.can_sample(self.batch_size)
                and steps % self.train_every_n_steps == 0)

    def _finish_episode(self, reward, steps, loss, laps, finished):
        self.epsilon = max(self.epsilon_end, self.epsilon * self.epsilon_decay)
        self.train_result_memory.add(reward, steps, loss, laps, finished)

        new_lr = self.lr_schedule.update(self.model.learning_rate, finished, self.train_result_memory)
        if new_lr is not None:
            self.model.set_learning_rate(new_lr)

    def _log_episode_summary(self, episode_nr):
        memory = self.train_result_memory
        elapsed = time.monotonic() - self.training_start
        logger.info(
            f"Episode: {episode_nr} | Reward: {memory.rewards[-1]:.2f} "
            f"| Avg({self.log_interval}): {memory.trailing_mean_reward(self.log_interval):.2f} "
            f"| Laps: {memory.laps[-1]} | eps: {self.epsilon:.3f} | Steps: {memory.lengths[-1]} "
            f"| LR: {self.model.learning_rate:.2e} | Time: {elapsed:.0f}s"
        )

    def _milestone(self, episode_nr):
        logger.info(f"===== Milestone {episode_nr} =====")
        self._save_model(f"model_episode_{episode_nr}")
        self._save_stats(episode_nr)

        result = self.eval(episode_nr)
        self.selector.update(result, self.model)
        logger.info(f"===== End of milestone =====")

    def eval(self, episode_nr: int = 0) -> EvalResult:
        """
        Greedy evaluation of the current policy on the evaluation simulation.
        """
        logger.info(f"===== Starting Evaluation Phase =====")
        result = evaluate_greedy(self.model, self.eval_simulation, self.eval_episodes,
                                 self.eval_max_steps, self.score_weights)

        logger.info(
            f"Eval (greedy, {result.episodes} eps) | finishes={result.finishes}/{result.episodes} "
            f"({result.finish_rate * 100.0:.1f}%) | avg_laps={result.avg_laps:.2f} "
            f"| avg_steps_finish={result.avg_steps_finish:.1f} | avg_wall_hits={result.avg_wall_hits:.2f} "
            f"| avg_off_track_frames={result.avg_off_track_frames:.1f} | avg_score={result.avg_score:.1f}"
        )

        self.eval_results.append(dict(episode=episode_nr, **result.as_dict()))
        eval_frame = pd.DataFrame(self.eval_results)
        eval_frame.to_csv(os.path.join(self.stats_save_path, "eval_results.csv"), index=False)
        if len(eval_frame) > 1:
            plot_eval_results(eval_frame, os.path.join(self.plots_save_path, "eval_results.png"))

        logger.info(f"===== End of Evaluation Phase =====")
        return result

    def _save_model(self, name: str):
        path = os.path.join(self.model_save_path, name + ".pt")
        logger.info(f"Saving model {path}")
        self.model.save_checkpoint(path)

    def _save_stats(self, episode_nr: int):
        """
        Saves the statistics of the episodes since the previous milestone as CSV.
        """
        logger.info(f"Saving stats of episode {episode_nr}")
        first_episode = max(1, episode_nr - self.milestone_interval + 1)
        frame = self.train_result_memory.to_frame(first_episode, episode_nr)
        frame.to_csv(os.path.join(self.stats_save_path, f"training_stats_{episode_nr}.csv"), index=False)

        plot_training_infos(self.train_result_memory.to_frame(),
                            os.path.join(self.plots_save_path, "all_in_one.png"))
