import logging

from racing_dqn_rl.agent import Agent, StopToken
from racing_dqn_rl.models.dqn import CheckpointError
from racing_dqn_rl.models.misc import set_seed
from racing_dqn_rl.track import Track

logger = logging.getLogger("root")

ENVIRONMENT_KEYS = {"seed", "track", "dt", "max_steps", "total_laps"}
AGENT_KEYS = {
    "train_episodes", "log_interval", "milestone_interval", "eval_episodes", "eval_max_steps",
    "batch_size", "replay_capacity", "warmup_episodes", "train_every_n_steps",
    "epsilon_start", "epsilon_end", "epsilon_decay", "rewards", "stall", "physics", "sensors",
    "score_weights", "selection_margins", "lr_schedule", "model",
}
RESUME_KEYS = {"pretrained_path", "resume_learning_rate", "fresh_start_on_resume_failure"}


def _check_keys(section: dict, allowed: set, name: str):
    unknown = sorted(set(section) - allowed)
    if unknown:
        msg = f"Unknown keys in configuration section '{name}': {unknown}"
        logger.error(msg)
        raise ValueError(msg)


class Experiment:
    """
    Represents an experiment with its main components, namely the race track
    and the reinforcement learning agent driving on it.
    An instance of this class reads the necessary fields of a given configuration (dict),
    builds the track and initializes the agent. The corresponding configurable
    attributes are described in ./config/sample-config-*.yaml.
    """

    def __init__(self, config: dict):
        # access environment related parameters
        environment_config = dict(config.get("environment") or {})
        _check_keys(environment_config, ENVIRONMENT_KEYS, "environment")

        # setting the seed
        self.seed = environment_config.get("seed", 0)
        set_seed(self.seed)

        # initialize the track, a broken surface map is fatal before any episode
        self.track = Track.from_config(environment_config.get("track"))
        logger.info(f"Using track {self.track.name} ({self.track.surface.width}x{self.track.surface.height}, "
                    f"{len(self.track.checkpoints)} checkpoints)")

        agent_config = dict(config.get("agent") or {})
        _check_keys(agent_config, AGENT_KEYS, "agent")

        model_config = dict(agent_config.pop("model", None) or {})
        parameters = dict(model_config.get("parameters") or {})
        resume_config = {key: parameters.pop(key) for key in RESUME_KEYS if key in parameters}
        model_config["parameters"] = parameters

        agent = Agent(
            save_path=config.get("experiment_path"),
            track=self.track,
            dt=environment_config.get("dt", 1.0 / 60.0),
            max_steps=environment_config.get("max_steps", 7500),
            total_laps=environment_config.get("total_laps", 3),
            model_config=model_config,
            seed=self.seed,
            **agent_config
        )

        self.agent = agent

        if config.get("mode") == "eval" and not resume_config.get("pretrained_path"):
            msg = "Evaluation mode requires agent.model.parameters.pretrained_path"
            logger.error(msg)
            raise ValueError(msg)
        self._resume(resume_config)

        logger.info("Successfully initialized experiment")

    def _resume(self, resume_config: dict):
        pretrained_path = resume_config.get("pretrained_path")
        if not pretrained_path:
            return

        try:
            self.agent.resume(pretrained_path, resume_config.get("resume_learning_rate"))
        except CheckpointError as e:
            if not resume_config.get("fresh_start_on_resume_failure", False):
                raise
            logger.error(f"Resuming from {pretrained_path} failed ({e}), training from scratch")

    def conduct(self, mode="train", stop_token: StopToken = None):
        if mode == "train":
            logger.info("Starting training experiment...")
            logger.info("Learning the agent...")
            self.agent.train(stop_token)
            logger.info("Finished learning the agent")
        elif mode == "eval":
            logger.info("Starting evaluation experiment...")
            logger.info("Evaluating the agent...")
            self.agent.eval()
            logger.info("Finished evaluating the agent")
        else:
            raise ValueError(f"Unknown mode: {mode}")
