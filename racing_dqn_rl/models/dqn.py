import logging
import pickle
import numpy as np
import torch
import torch.nn as nn
import torch.optim as optim

from racing_dqn_rl.models.misc import atomic_torch_save, init_weights
from racing_dqn_rl.models.replay_buffer import Batch
from racing_dqn_rl.simulation import ACTION_SIZE, STATE_SIZE

logger = logging.getLogger("root")


class CheckpointError(Exception):
    """Raised when a policy file cannot be saved or loaded."""


class QNetwork(nn.Module):
    def __init__(self, input_dim, hidden_dim, output_dim):
        super().__init__()

        self.net = nn.Sequential(
            nn.Linear(input_dim, hidden_dim),
            nn.ReLU(),
            nn.Linear(hidden_dim, hidden_dim),
            nn.ReLU(),
            nn.Linear(hidden_dim, output_dim),
        )

    def forward(self, x):
        return self.net(x)


class DQN:
    """
    Double DQN learner with a policy network and a soft-updated target network.
    The target network is never trained directly; after every train step it is blended
    towards the policy network: target <- tau * policy + (1 - tau) * target.
    """

    def __init__(
            self,
            state_size: int = STATE_SIZE,
            action_size: int = ACTION_SIZE,
            hidden_dim: int = 64,
            learning_rate: float = 1e-3,
            gamma: float = 0.99,
            tau: float = 0.005,
            max_grad_norm: float = 1.0,
            device: torch.device = None,
    ):
        logger.info("Initializing DQN model...")

        self.state_size = state_size
        self.action_size = action_size
        self.gamma = gamma
        self.tau = tau
        self.max_grad_norm = max_grad_norm
        self.device = device or torch.device("cpu")
        self.criterion = nn.MSELoss()

        # two independent parameter sets, the target only tracks the policy
        self.policy = QNetwork(state_size, hidden_dim, action_size).to(self.device)
        self.target = QNetwork(state_size, hidden_dim, action_size).to(self.device)
        self.policy.apply(init_weights)
        self.hard_update()
        self.target.eval()

        self.optimizer = optim.Adam(self.policy.parameters(), lr=learning_rate)

        logger.info(
            f"Initialized DQN model ({state_size} -> {hidden_dim} -> {hidden_dim} -> {action_size}) "
            f"with {sum(p.numel() for p in self.policy.parameters())} trainable parameters")

    @property
    def learning_rate(self) -> float:
        return self.optimizer.param_groups[0]["lr"]

    def set_learning_rate(self, learning_rate: float):
        for group in self.optimizer.param_groups:
            group["lr"] = learning_rate

    @property
    def training(self) -> bool:
        return self.policy.training

    def set_mode(self, training: bool):
        """Switches the policy network between training and (deterministic) evaluation behaviour."""
        self.policy.train(training)

    def predict(self, state) -> np.ndarray:
        """Action values of the policy network for a single state vector."""
        state = np.asarray(state, dtype=np.float32)
        if state.shape != (self.state_size,):
            msg = f"State vector has shape {state.shape}, expected ({self.state_size},)"
            logger.error(msg)
            raise ValueError(msg)

        with torch.no_grad():
            state_tensor = torch.from_numpy(state).unsqueeze(0).to(self.device)
            q_values = self.policy(state_tensor)
        return q_values.squeeze(0).cpu().numpy()

    def greedy_action(self, state) -> int:
        return int(np.argmax(self.predict(state)))

    def compute_targets(self, rewards, next_states, dones) -> torch.Tensor:
        """
        Double DQN targets: the policy network selects the next action,
        the target network evaluates it.
        """
        with torch.no_grad():
            next_actions = self.policy(next_states).argmax(dim=1, keepdim=True)
            next_q_values = self.target(next_states).gather(1, next_actions).squeeze(1)
            return rewards + self.gamma * next_q_values * (1.0 - dones)

    def train_step(self, batch: Batch) -> float:
        states, actions, rewards, next_states, dones = self._to_tensors(batch)

        current_q_values = self.policy(states).gather(1, actions.unsqueeze(1)).squeeze(1)
        target_q_values = self.compute_targets(rewards, next_states, dones)

        loss = self.criterion(current_q_values, target_q_values)

        self.optimizer.zero_grad()
        loss.backward()
        torch.nn.utils.clip_grad_norm_(self.policy.parameters(), self.max_grad_norm)
        self.optimizer.step()

        self.soft_update()

        return loss.item()

    def soft_update(self, tau: float = None):
        tau = self.tau if tau is None else tau
        with torch.no_grad():
            for target_param, policy_param in zip(self.target.parameters(), self.policy.parameters()):
                target_param.mul_(1.0 - tau).add_(policy_param, alpha=tau)

    def hard_update(self):
        self.target.load_state_dict(self.policy.state_dict())

    def save_checkpoint(self, path: str):
        try:
            atomic_torch_save(self.policy.state_dict(), path)
        except (OSError, RuntimeError) as e:
            msg = f"Could not save policy to {path}: {e}"
            logger.error(msg)
            raise CheckpointError(msg) from e
        logger.debug(f"Saved policy to {path}")

    def load_checkpoint(self, path: str):
        """Loads policy parameters and hard-copies them into the target network."""
        logger.info(f"Loading DQN policy from {path}...")
        try:
            state_dict = torch.load(path, map_location=self.device)
            self.policy.load_state_dict(state_dict)
        except (OSError, EOFError, RuntimeError, KeyError, TypeError, AttributeError,
                pickle.UnpicklingError) as e:
            msg = f"Could not load policy from {path}: {e}"
            logger.error(msg)
            raise CheckpointError(msg) from e
        self.hard_update()

    def _to_tensors(self, batch: Batch):
        if batch.states.ndim != 2 or batch.states.shape[1] != self.state_size or \
                batch.next_states.shape != batch.states.shape:
            msg = f"Batch states have shape {batch.states.shape}, expected (n, {self.state_size})"
            logger.error(msg)
            raise ValueError(msg)

        return (
            torch.as_tensor(batch.states, dtype=torch.float32, device=self.device),
            torch.as_tensor(batch.actions, dtype=torch.long, device=self.device),
            torch.as_tensor(batch.rewards, dtype=torch.float32, device=self.device),
            torch.as_tensor(batch.next_states, dtype=torch.float32, device=self.device),
            torch.as_tensor(batch.dones, dtype=torch.float32, device=self.device),
        )
