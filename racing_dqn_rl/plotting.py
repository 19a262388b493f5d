import datetime
import matplotlib

matplotlib.use("Agg")

import pandas as pd

from collections import OrderedDict
from matplotlib import pyplot as plt


def moving_average(values, window):
    """
    Trailing mean over at most `window` values for every position of the input.
    """
    return pd.Series(values, dtype=float).rolling(window, min_periods=1).mean().tolist()


def calculate_values_from_data_for_plots(stats: pd.DataFrame, smoothing_window_size: int = 10):
    """
    calculates values for plots from a frame with the columns
    episode, reward, length, avg_loss, laps, finished
    """
    plot_data = OrderedDict()

    plot_data['episode_rewards'] = stats['reward'].tolist()
    plot_data['smoothed_rewards'] = moving_average(stats['reward'], smoothing_window_size)
    plot_data['steps_per_episode'] = stats['length'].tolist()
    plot_data['smoothed_laps'] = moving_average(stats['laps'], smoothing_window_size)
    plot_data['finish_rate'] = moving_average(stats['finished'].astype(float), smoothing_window_size)
    plot_data['mean_loss'] = stats['avg_loss'].tolist()

    return plot_data


def plot_line(axs, plot_data, label, y_labels, episodes, fontsize):
    x_label = "Episodes"

    for i, key in enumerate(plot_data.keys()):
        axs[i].plot(episodes, plot_data[key], label=label)
        axs[i].set_xlabel(x_label, fontsize=fontsize)
        axs[i].set_ylabel(y_labels[i], fontsize=fontsize)
        if label:
            axs[i].legend()
        axs[i].grid(True)


def plot_training_infos(stats: pd.DataFrame, save_path: str, title: str = "Training",
                        smoothing_window_size: int = 10):
    plot_data = calculate_values_from_data_for_plots(stats, smoothing_window_size)

    now = datetime.datetime.now().strftime("%m/%d/%Y")
    fontsize = 20

    fig, axs = plt.subplots(len(plot_data), 1)
    fig.suptitle(f"{title} {now}", fontsize=fontsize)
    fig.set_figwidth(15)
    fig.set_figheight(25)

    y_labels = ['Episode Reward', f'Smoothed Reward ({smoothing_window_size})', 'Steps / Episode',
                f'Smoothed Laps ({smoothing_window_size})', f'Finish Rate ({smoothing_window_size})', 'Mean Loss']
    plot_line(axs, plot_data, "", y_labels, stats['episode'].tolist(), fontsize)
    plt.tight_layout()
    fig.savefig(save_path)
    plt.close(fig)


def plot_eval_results(eval_results: pd.DataFrame, save_path: str):
    fontsize = 20
    columns = ['finish_rate', 'avg_laps', 'avg_steps_finish', 'avg_score']

    fig, axs = plt.subplots(len(columns), 1)
    fig.suptitle("Greedy evaluation per milestone", fontsize=fontsize)
    fig.set_figwidth(15)
    fig.set_figheight(17)

    for ax, column in zip(axs, columns):
        ax.plot(eval_results['episode'], eval_results[column], marker="o")
        ax.set_xlabel("Episodes", fontsize=fontsize)
        ax.set_ylabel(column, fontsize=fontsize)
        ax.grid(True)

    plt.tight_layout()
    fig.savefig(save_path)
    plt.close(fig)
