"""
Unit tests for the vehicle physics, the ray sensors and the race simulation.
"""

import math
import random

import numpy as np
import pytest

from racing_dqn_rl.simulation import (
    ACTION_SIZE, STATE_SIZE, Physics, RaceSimulation, VehicleState, cast_rays, observe, step,
)
from racing_dqn_rl.track import OFF_TRACK_COLOR, TRACK_COLOR, WALL_COLOR, RaceEvent, Surface, SurfaceMap

DT = 1.0 / 60.0


def uniform_surface(color, width=50, height=50):
    pixels = np.zeros((height, width, 3), dtype=np.uint8)
    pixels[:] = color
    return SurfaceMap(pixels)


def test_state_vector_shape_and_bounds(small_track):
    """Test the state layout over a random drive."""
    simulation = RaceSimulation(small_track, DT)
    state = simulation.reset()
    assert state.shape == (STATE_SIZE,)
    assert STATE_SIZE == 23
    assert state.dtype == np.float32

    rng = random.Random(0)
    for _ in range(300):
        simulation.advance(rng.randrange(ACTION_SIZE))
        state = simulation.observe()

        assert -1.0 <= state[0] <= 1.0
        assert state[1] ** 2 + state[2] ** 2 == pytest.approx(1.0, abs=1e-5)
        assert 0.0 <= state[3] <= 1.0
        assert 0.0 <= state[4] <= 1.0
        assert np.all((state[5:] >= 0.0) & (state[5:] <= 1.0)), f"Sensor out of range: {state[5:]}"


def test_cast_rays_hits_map_edge():
    """A ray in an open map stops at the first sample outside the map."""
    surface = uniform_surface(TRACK_COLOR, 100, 100)
    distances = cast_rays(surface, 50.0, 50.0, np.array([0.0]), 200.0, 2.0)
    assert distances[0] == pytest.approx(50.0)

    distances = cast_rays(surface, 50.0, 50.0, np.array([0.0]), 20.0, 2.0)
    assert distances[0] == pytest.approx(20.0), "Rays that never hit report the maximum distance"


def test_danger_sensor_rises_near_wall():
    pixels = np.zeros((100, 100, 3), dtype=np.uint8)
    pixels[:] = TRACK_COLOR
    pixels[:, 80:] = WALL_COLOR
    surface = SurfaceMap(pixels)

    far = observe(surface, VehicleState(20.0, 50.0, 0.0, 0.0))
    near = observe(surface, VehicleState(70.0, 50.0, 0.0, 0.0))
    # index 5 + 6 is the straight-ahead danger ray
    assert near[11] > far[11]


def test_collision_rolls_back_and_bounces():
    """Test that moving into a wall keeps the old position and reverses the speed."""
    pixels = np.zeros((50, 50, 3), dtype=np.uint8)
    pixels[:] = TRACK_COLOR
    pixels[:, 30:] = WALL_COLOR
    surface = SurfaceMap(pixels)
    physics = Physics()

    vehicle = VehicleState(28.0, 25.0, 0.0, 200.0)
    moved, collided, ground = step(surface, vehicle, 0, DT, physics)

    expected_speed = 200.0 + (physics.acceleration - physics.friction) * DT
    assert collided
    assert ground is Surface.TRACK
    assert (moved.x, moved.y) == (28.0, 25.0)
    assert moved.speed == pytest.approx(-physics.bounce_factor * expected_speed)


def test_friction_only_while_coasting():
    """Surface friction multiplies the base friction only without acceleration input."""
    grass = uniform_surface(OFF_TRACK_COLOR)
    coasting, _, ground = step(grass, VehicleState(25.0, 25.0, 0.0, 100.0), 6, DT)
    assert ground is Surface.OFF_TRACK
    assert coasting.speed == pytest.approx(100.0 - 50.0 * 3.0 * DT)

    accelerating, _, _ = step(grass, VehicleState(25.0, 25.0, 0.0, 100.0), 0, DT)
    assert accelerating.speed == pytest.approx(100.0 + (150.0 - 50.0) * DT)


def test_speed_limits():
    track = uniform_surface(TRACK_COLOR, 500, 500)
    fast, _, _ = step(track, VehicleState(250.0, 250.0, 0.0, 300.0), 0, DT)
    assert fast.speed == pytest.approx(300.0)

    grass = uniform_surface(OFF_TRACK_COLOR, 500, 500)
    slowed, _, _ = step(grass, VehicleState(250.0, 250.0, 0.0, 300.0), 0, DT)
    assert slowed.speed == pytest.approx(150.0), "Off-track speed is capped at half the maximum"

    backwards, _, _ = step(track, VehicleState(250.0, 250.0, 0.0, -150.0), 1, DT)
    assert backwards.speed == pytest.approx(-150.0), "Reverse speed is capped at half the maximum"


def test_no_steering_when_standing():
    track = uniform_surface(TRACK_COLOR)
    turned, _, _ = step(track, VehicleState(25.0, 25.0, 1.0, 0.0), 2, DT)
    assert turned.angle == 1.0

    turned, _, _ = step(track, VehicleState(25.0, 25.0, 1.0, 100.0), 3, DT)
    assert turned.angle > 1.0


def test_reverse_inverts_steering():
    track = uniform_surface(TRACK_COLOR, 200, 200)
    forward, _, _ = step(track, VehicleState(100.0, 100.0, 0.0, 50.0), 3, DT)
    backward, _, _ = step(track, VehicleState(100.0, 100.0, 0.0, -50.0), 3, DT)
    assert forward.angle > 0.0
    assert backward.angle < 0.0


def test_invalid_action():
    with pytest.raises(ValueError):
        step(uniform_surface(TRACK_COLOR), VehicleState(25.0, 25.0), ACTION_SIZE, DT)


def test_race_starts_when_driving_forward(small_track):
    """Driving straight from the start crosses the boundary and starts the race."""
    simulation = RaceSimulation(small_track, DT, total_laps=1)
    simulation.reset()

    events = []
    for _ in range(120):
        outcome = simulation.advance(0)
        events.append(outcome.event)
        assert not outcome.collided
        if outcome.event is RaceEvent.STARTED:
            break

    assert RaceEvent.STARTED in events
    assert simulation.ring.next_index == 1
    assert simulation.vehicle.speed > 0.0


def test_outcome_target_is_expected_checkpoint(small_track):
    simulation = RaceSimulation(small_track, DT)
    simulation.reset()
    outcome = simulation.advance(6)
    assert outcome.target == simulation.ring.boundary.midpoint
    assert outcome.previous == outcome.vehicle


def test_reset_restores_start(small_track):
    simulation = RaceSimulation(small_track, DT)
    simulation.reset()
    for _ in range(60):
        simulation.advance(0)
    simulation.reset()

    x, y, angle = small_track.start
    assert simulation.vehicle == VehicleState(x, y, angle, 0.0)
    assert not simulation.ring.started
    assert simulation.laps_completed == 0


def test_place_moves_vehicle(small_track):
    simulation = RaceSimulation(small_track, DT)
    simulation.reset()
    state = simulation.place(angle=math.pi / 2, speed=150.0)
    assert state[0] == pytest.approx(0.5)
    assert state[1] == pytest.approx(1.0)


def test_default_physics_and_sensors_are_not_shared():
    """Defaults are built per call, so no mutable instance lives in the signatures."""
    import inspect

    assert inspect.signature(step).parameters["physics"].default is None
    assert inspect.signature(observe).parameters["physics"].default is None
    assert inspect.signature(observe).parameters["sensors"].default is None

    track = uniform_surface(TRACK_COLOR, 200, 200)
    moved, _, _ = step(track, VehicleState(100.0, 100.0, 0.0, 0.0), 0, DT)
    assert moved.speed == pytest.approx((150.0 - 50.0) * DT)
    assert observe(track, moved).shape == (STATE_SIZE,)
