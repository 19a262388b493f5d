import datetime
import logging
import os
import shutil
import yaml


def parse_config(config_file: str) -> dict:
    """
    Reads the YAML configuration file of an experiment.
    """
    with open(config_file, "r") as file:
        configuration = yaml.safe_load(file)

    if not isinstance(configuration, dict):
        raise ValueError(f"Configuration file {config_file} does not contain a mapping")
    return configuration


def create_experiment_dir(config_file: str, experiment_path: str, mode: str) -> str:
    """
    Creates <experiment_path>/<mode>/<timestamp> with the sub directories model, stats and plots
    and copies the configuration file into it. Returns the created directory.
    """
    now = datetime.datetime.now().strftime("%Y-%m-%d-%H-%M-%S")
    base_path = os.path.join(os.path.normpath(experiment_path), mode, now)

    for sub_dir in ("model", "stats", "plots"):
        os.makedirs(os.path.join(base_path, sub_dir), exist_ok=True)
    shutil.copy(config_file, os.path.join(base_path, os.path.basename(config_file)))

    return base_path


def setup_logger(path: str, level: str = "INFO", fmt: str = None) -> logging.Logger:
    """
    Sets up the "root" logger used by all modules with a file handler writing
    <path>/experiment.log and a console handler.
    """
    logger = logging.getLogger("root")
    logger.setLevel(level.upper() if isinstance(level, str) else level)
    formatter = logging.Formatter(fmt or "%(asctime)s | %(levelname)s | %(module)s | %(message)s")

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    file_handler = logging.FileHandler(os.path.join(path, "experiment.log"))
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger
