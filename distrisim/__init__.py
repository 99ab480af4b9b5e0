"""
distrisim - step-by-step simulations of distributed systems protocols.

Every protocol model owns its participants and an in-flight message pool;
the host layer replays scripted scenarios against it.
"""

__version__ = "1.0.0"
