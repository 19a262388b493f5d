import argparse
import datetime
import os
import sys

import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt

# This part of the script adapts the Python sys.path so the racing_dqn_rl package
# can be used like a package without installing it.
# This is meant for development use-cases only.

# Get the absolute path to the 'project' directory
project_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))

# Add the 'project' directory to the Python path
sys.path.append(project_dir)

from racing_dqn_rl.analysis import load_training_stats, write_summary
from racing_dqn_rl.plotting import calculate_values_from_data_for_plots, plot_line


def main():
    """
    Summarizes one or more exported training statistics CSVs
    (columns episode, reward, length, avg_loss, laps, finished).
    Every summary is printed and written next to its CSV as <csv stem>_summary.txt.
    With --fig_name all runs are additionally plotted into one comparison figure.
    """
    parser = argparse.ArgumentParser()
    parser.add_argument(
        "--stats_paths",
        type=str,
        nargs=argparse.ONE_OR_MORE,
        metavar="[PATH_TO_STATS_CSV, ...]",
        required=True,
        help="relative or absolute paths to exported training statistics",
    )
    parser.add_argument(
        "--fig_name",
        type=str,
        metavar="COMPARISON_PLOT_NAME",
        required=False,
        help="if given, saves a comparison plot of all runs as <fig_name>.png",
    )
    parser.add_argument(
        "--smoothing_window",
        type=int,
        default=10,
        help="window size of the moving averages in the comparison plot",
    )
    args = parser.parse_args()

    runs = {}
    for stats_path in args.stats_paths:
        summary_path = write_summary(stats_path)
        with open(summary_path, "r") as file:
            print(file.read())
        print(f"Summary saved to {summary_path}\n")
        runs[stats_path] = load_training_stats(stats_path)

    if args.fig_name:
        _plot_comparison(runs, args.fig_name, args.smoothing_window)


def _plot_comparison(runs, fig_name, smoothing_window):
    fontsize = 20
    now = datetime.datetime.now().strftime("%m/%d/%Y")
    y_labels = ['Episode Reward', f'Smoothed Reward ({smoothing_window})', 'Steps / Episode',
                f'Smoothed Laps ({smoothing_window})', f'Finish Rate ({smoothing_window})', 'Mean Loss']

    fig, axs = plt.subplots(len(y_labels), 1)
    fig.suptitle('Training ' + now, fontsize=fontsize)
    fig.set_figwidth(15)
    fig.set_figheight(25)

    for label, stats in runs.items():
        plot_data = calculate_values_from_data_for_plots(stats, smoothing_window)
        plot_line(axs, plot_data, os.path.basename(label), y_labels, stats['episode'].tolist(), fontsize)

    plt.tight_layout()
    fig.savefig(fig_name + ".png")
    plt.close(fig)
    print(f"Comparison plot saved to {fig_name}.png")


if __name__ == '__main__':
    main()
