# Entry script to run an experiment.
# Just a simple script to handle the correct 'project' directory
# (if the packages were not installed with pip).

# This part of the script adapts the Python sys.path so the racing_dqn_experiment package
# can be used like a package without installing it.
# This is meant for development use-cases only.
import sys
import os

# Get the absolute path to the 'project' directory
project_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))

# Add the 'project' directory to the Python path
sys.path.append(project_dir)

# This part of the script is the main part that is calling the main function
# of the racing_dqn_experiment package.
from racing_dqn_experiment.main import main

if __name__ == '__main__':
    main()
