"""
Symbolic-Swarm: Evolutionary Symbolic Regression with Regularized Evolution

A framework for discovering compact equations that fit data, using many
small populations of expression trees evolved in parallel, local constant
optimisation, and a Hall of Fame of the best equation at every complexity.
"""

__version__ = "0.1.0"
