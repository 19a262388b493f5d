import logging
import os
import pandas as pd

from typing import List

logger = logging.getLogger("root")

STATS_COLUMNS = ["episode", "reward", "length", "avg_loss", "laps", "finished"]


def load_training_stats(path: str) -> pd.DataFrame:
    stats = pd.read_csv(path)
    missing = [column for column in STATS_COLUMNS if column not in stats.columns]
    if missing:
        msg = f"{path} misses the columns {missing}"
        logger.error(msg)
        raise ValueError(msg)
    return stats


def _improvement(first: float, last: float) -> dict:
    change = last - first
    percent = change / abs(first) * 100.0 if first != 0 else float("nan")
    return {"first": first, "last": last, "improvement": change, "improvement_pct": percent}


def summarize_training(stats: pd.DataFrame, moving_average_windows=(10, 50, 100)) -> dict:
    """
    Aggregates an exported episode-statistics frame into overall statistics, moving averages,
    the top episodes, per-quarter progress and an early-vs-late comparison.
    """
    if stats.empty:
        raise ValueError("No episodes to summarize")

    rewards = stats["reward"].astype(float)
    finishing = int(stats["finished"].astype(bool).sum())

    summary = {
        "episodes": len(stats),
        "mean_reward": rewards.mean(),
        "std_reward": rewards.std(ddof=1) if len(stats) > 1 else 0.0,
        "min_reward": rewards.min(),
        "max_reward": rewards.max(),
        "mean_length": stats["length"].mean(),
        "mean_loss": stats["avg_loss"].mean(),
        "mean_laps": stats["laps"].mean(),
        "max_laps": int(stats["laps"].max()),
        "total_laps": int(stats["laps"].sum()),
        "finishing_episodes": finishing,
        "finishing_pct": 100.0 * finishing / len(stats),
    }

    moving_averages = {}
    for window in moving_average_windows:
        if len(stats) < window:
            continue
        ma = rewards.rolling(window).mean().dropna().reset_index(drop=True)
        entry = _improvement(ma.iloc[0], ma.iloc[-1])
        entry["middle"] = ma.iloc[len(ma) // 2]
        moving_averages[window] = entry
    summary["moving_averages"] = moving_averages

    top = stats.sort_values("reward", ascending=False).head(10)
    summary["top_episodes"] = top[["episode", "reward", "length", "laps"]].to_dict("records")

    quarters = []
    if len(stats) >= 40:
        quarter_size = len(stats) // 4
        for q in range(4):
            start = q * quarter_size
            end = len(stats) if q == 3 else (q + 1) * quarter_size
            chunk = stats.iloc[start:end]
            quarters.append({
                "first_episode": start + 1,
                "last_episode": end,
                "avg_reward": chunk["reward"].mean(),
                "avg_laps": chunk["laps"].mean(),
            })
    summary["quarters"] = quarters

    compare_window = min(max(10, int(len(stats) * 0.2)), len(stats))
    summary["compare_window"] = compare_window
    summary["early_vs_late"] = _improvement(rewards.iloc[:compare_window].mean(),
                                            rewards.iloc[-compare_window:].mean())
    summary["recommendations"] = recommendations(summary)
    return summary


def recommendations(summary: dict) -> List[str]:
    notes = []
    episodes = summary["episodes"]
    finishing = summary["finishing_episodes"]

    if finishing == 0:
        notes.append("Agent has not completed any races yet, train for more episodes (aim for 200-500)")
    elif finishing < episodes * 0.1:
        notes.append("Agent rarely completes races, continue training to improve consistency")
    elif finishing < episodes * 0.5:
        notes.append("Agent is learning but not yet consistent, train for 100-200 more episodes")
    else:
        notes.append("Agent is performing well, fine-tune with more training or adjust rewards")

    improvement_pct = summary["early_vs_late"]["improvement_pct"]
    if improvement_pct > 50:
        notes.append("Strong learning progress")
    elif improvement_pct > 0:
        notes.append("Moderate learning progress")
    else:
        notes.append("Limited learning, may need more episodes or hyperparameter tuning")
    return notes


def format_summary(summary: dict, source: str = "") -> str:
    lines = ["=== Training Summary ==="]
    if source:
        lines.append(f"File: {source}")
    lines += [
        f"Episodes:              {summary['episodes']}",
        f"Mean Reward:           {summary['mean_reward']:.2f} +- {summary['std_reward']:.2f}",
        f"Reward Range:          [{summary['min_reward']:.2f}, {summary['max_reward']:.2f}]",
        f"Mean Episode Length:   {summary['mean_length']:.2f} steps",
        f"Mean Loss:             {summary['mean_loss']:.4f}",
        f"Mean Laps Completed:   {summary['mean_laps']:.2f}",
        f"Max Laps in Episode:   {summary['max_laps']}",
        f"Total Laps Completed:  {summary['total_laps']}",
        f"Episodes Finishing:    {summary['finishing_episodes']} ({summary['finishing_pct']:.2f}%)",
    ]

    for window, entry in summary["moving_averages"].items():
        lines.append(f"--- Moving average (window = {window}) ---")
        lines.append(f"First: {entry['first']:.2f} | Middle: {entry['middle']:.2f} | Last: {entry['last']:.2f} "
                     f"| Improvement: {entry['improvement']:.2f} ({entry['improvement_pct']:.1f}%)")

    lines.append("--- Top episodes ---")
    for episode in summary["top_episodes"]:
        lines.append(f"episode {int(episode['episode']):>6} | reward {episode['reward']:>10.2f} "
                     f"| steps {int(episode['length']):>6} | laps {int(episode['laps'])}")

    for quarter in summary["quarters"]:
        lines.append(f"Episodes {quarter['first_episode']}-{quarter['last_episode']}: "
                     f"avg reward {quarter['avg_reward']:.2f}, avg laps {quarter['avg_laps']:.2f}")

    early_vs_late = summary["early_vs_late"]
    window = summary["compare_window"]
    lines.append(f"First {window} episodes avg: {early_vs_late['first']:.2f} | "
                 f"Last {window} episodes avg: {early_vs_late['last']:.2f} | "
                 f"Improvement: {early_vs_late['improvement']:.2f} ({early_vs_late['improvement_pct']:.1f}%)")

    lines.append("--- Recommendations ---")
    lines += [f"* {note}" for note in summary["recommendations"]]
    return "\n".join(lines)


def write_summary(stats_path: str) -> str:
    """Summarizes a stats CSV into <csv stem>_summary.txt and returns that path."""
    stats = load_training_stats(stats_path)
    text = format_summary(summarize_training(stats), source=stats_path)

    summary_path = os.path.splitext(stats_path)[0] + "_summary.txt"
    with open(summary_path, "w") as file:
        file.write(text + "\n")
    logger.info(f"Saved training summary to {summary_path}")
    return summary_path
