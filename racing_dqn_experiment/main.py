import argparse
import signal

from racing_dqn_experiment.experiment import Experiment
from racing_dqn_experiment.misc import create_experiment_dir, parse_config, setup_logger
from racing_dqn_rl.agent import StopToken


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument(
        "--conf",
        type=str,
        metavar="PATH_TO_CONF_FILE",
        required=True,
        help="relative or absolute path to the configuration file",
    )
    args = parser.parse_args()

    # read configuration file
    configuration_file = args.conf
    configuration = parse_config(configuration_file)

    # experiment setup
    mode = configuration.get("mode", "train")
    log_lvl = configuration.get("logger", {}).get("level", "INFO")
    log_fmt = configuration.get("logger", {}).get("format")
    experiment_path = create_experiment_dir(
        configuration_file,
        configuration.get("experiment_path", "experiments"),
        mode,
    )

    # overwrite overall experiment path with the newly created base_path of the experiment
    configuration["experiment_path"] = experiment_path

    # logger setup
    logger = setup_logger(experiment_path, log_lvl, log_fmt)
    logger.info(
        "Successfully read the given configuration file, created experiment directory and set up logger."
    )
    logger.info(
        f"Starting experiment in mode {mode} using configuration {configuration_file}"
    )

    # Ctrl+C stops the training loop, the final model is saved afterwards
    stop_token = StopToken()

    def request_stop(signum, frame):
        logger.warning("Received interrupt, stopping training...")
        stop_token.request()

    signal.signal(signal.SIGINT, request_stop)

    exp = Experiment(configuration)
    exp.conduct(mode=mode, stop_token=stop_token)


if __name__ == '__main__':
    main()
