# This package handles the learning of agents driving a simulated race car.
# It includes modules regarding
#   - the race track and the vehicle simulation with its sensors,
#   - the learning of the agent (Double DQN with experience replay),
#   - the reward shaping, evaluation and selection of trained policies and
#   - the plotting and analysis of training statistics.
