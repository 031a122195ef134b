"""
fingers package
~~~~~~~~~~~~~~~

Feedforward neural network trainer built on numpy.
Contains the network implementation, the parallel training loop,
data utilities, model persistence, visualization helpers and the
training API server.
"""

__version__ = "1.0.0"
