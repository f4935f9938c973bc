"""
Delivery Routing Module.

This module sequences and re-sequences the delivery stops of a single
driver's shift using geocoding, distance estimation and a set of
heuristic route optimizers.
"""

__version__ = '0.1.0'
