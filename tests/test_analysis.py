"""
Unit tests for the offline training analysis.
"""

import pandas as pd
import pytest

from racing_dqn_rl.analysis import format_summary, load_training_stats, summarize_training, write_summary


def make_stats(n=60):
    return pd.DataFrame({
        "episode": list(range(1, n + 1)),
        "reward": [float(i) for i in range(1, n + 1)],
        "length": [100 + i for i in range(n)],
        "avg_loss": [0.5] * n,
        "laps": [i % 4 for i in range(n)],
        "finished": [int(i % 10 == 0) for i in range(1, n + 1)],
    })


def test_summary_statistics():
    summary = summarize_training(make_stats())

    assert summary["episodes"] == 60
    assert summary["mean_reward"] == pytest.approx(30.5)
    assert summary["max_reward"] == 60.0
    assert summary["finishing_episodes"] == 6
    assert summary["finishing_pct"] == pytest.approx(10.0)
    assert summary["max_laps"] == 3


def test_moving_averages_and_progress():
    summary = summarize_training(make_stats())

    assert sorted(summary["moving_averages"]) == [10, 50], "Windows longer than the run are skipped"
    assert summary["moving_averages"][10]["first"] == pytest.approx(5.5)
    assert summary["moving_averages"][10]["last"] == pytest.approx(55.5)

    assert len(summary["quarters"]) == 4
    assert summary["quarters"][0]["first_episode"] == 1
    assert summary["quarters"][3]["last_episode"] == 60

    assert summary["compare_window"] == 12
    assert summary["early_vs_late"]["improvement"] == pytest.approx(48.0)
    assert summary["top_episodes"][0]["episode"] == 60
    assert "Strong learning progress" in summary["recommendations"]


def test_short_runs_have_no_quarters():
    summary = summarize_training(make_stats(20))
    assert summary["quarters"] == []
    assert summary["compare_window"] == 10


def test_no_finishes_recommendation():
    stats = make_stats(20)
    stats["finished"] = 0
    notes = summarize_training(stats)["recommendations"]
    assert any("not completed any races" in note for note in notes)


def test_write_summary(tmp_path):
    path = tmp_path / "training_stats_60.csv"
    make_stats().to_csv(path, index=False)

    summary_path = write_summary(str(path))

    assert summary_path == str(tmp_path / "training_stats_60_summary.txt")
    text = open(summary_path).read()
    assert "Episodes Finishing:    6 (10.00%)" in text
    assert "--- Recommendations ---" in text


def test_format_summary_mentions_source():
    text = format_summary(summarize_training(make_stats()), source="run.csv")
    assert "File: run.csv" in text


def test_missing_columns(tmp_path):
    path = tmp_path / "broken.csv"
    pd.DataFrame({"episode": [1], "reward": [1.0]}).to_csv(path, index=False)
    with pytest.raises(ValueError):
        load_training_stats(str(path))


def test_empty_stats():
    with pytest.raises(ValueError):
        summarize_training(make_stats(0))
