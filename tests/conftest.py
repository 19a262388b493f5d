import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from racing_dqn_rl.track import build_oval_track


SMALL_OVAL = dict(width=300, height=300, radius_x=110, radius_y=100, track_width=40,
                  off_track_width=10, n_checkpoints=6, name="small-oval")


@pytest.fixture(scope="session")
def small_track():
    """A 300x300 procedural oval, small enough for fast ray casting."""
    return build_oval_track(**SMALL_OVAL)
