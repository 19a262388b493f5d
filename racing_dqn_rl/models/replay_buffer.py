import logging
import random
import numpy as np

from collections import deque
from typing import Iterator, NamedTuple, Optional

logger = logging.getLogger("root")


class Transition(NamedTuple):
    state: np.ndarray
    action: int
    reward: float
    next_state: np.ndarray
    done: bool


class Batch(NamedTuple):
    states: np.ndarray  # (n, state_size) float32
    actions: np.ndarray  # (n,) int64
    rewards: np.ndarray  # (n,) float32
    next_states: np.ndarray  # (n, state_size) float32
    dones: np.ndarray  # (n,) float32


class ReplayBuffer:
    """
    Fixed-capacity FIFO store of transitions with uniform sampling (with replacement).
    When full, the oldest transition is evicted on insertion.
    """

    def __init__(self, capacity: int = 50000, rng: Optional[random.Random] = None):
        if capacity <= 0:
            msg = f"Replay buffer capacity must be positive, got {capacity}"
            logger.error(msg)
            raise ValueError(msg)
        self.capacity = capacity
        self.memory = deque(maxlen=capacity)
        self.rng = rng or random.Random()

    def add(self, transition: Transition):
        self.memory.append(transition)

    def push(self, state, action, reward, next_state, done):
        self.add(Transition(state, int(action), float(reward), next_state, bool(done)))

    def can_sample(self, batch_size: int) -> bool:
        return len(self.memory) >= batch_size

    def sample(self, batch_size: int) -> Batch:
        if not self.can_sample(batch_size):
            raise ValueError(f"Cannot sample {batch_size} transitions from a buffer holding {len(self.memory)}")

        indices = [self.rng.randrange(len(self.memory)) for _ in range(batch_size)]
        transitions = [self.memory[i] for i in indices]

        return Batch(
            states=np.stack([t.state for t in transitions]).astype(np.float32),
            actions=np.array([t.action for t in transitions], dtype=np.int64),
            rewards=np.array([t.reward for t in transitions], dtype=np.float32),
            next_states=np.stack([t.next_state for t in transitions]).astype(np.float32),
            dones=np.array([t.done for t in transitions], dtype=np.float32),
        )

    def clear(self):
        self.memory.clear()

    def __iter__(self) -> Iterator[Transition]:
        return iter(self.memory)

    def __len__(self):
        return len(self.memory)
