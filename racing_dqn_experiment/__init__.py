# This package handles the setup and execution of experiments:
#   - the configuration parsing,
#   - the experiment directory and logging setup and
#   - the execution of the training or evaluation of an agent.

__all__ = ["experiment",
           "main",
           "misc"]
