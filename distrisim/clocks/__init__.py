"""
Logical time: Lamport clocks, vector clocks and Chandy-Lamport snapshots.
"""
from distrisim.clocks.chandy_lamport import ChandyLamportAlgorithm
from distrisim.clocks.lamport import LamportClocksAlgorithm
from distrisim.clocks.vector import VectorClocksAlgorithm, concurrent, happened_before

__all__ = [
    "ChandyLamportAlgorithm",
    "LamportClocksAlgorithm",
    "VectorClocksAlgorithm",
    "concurrent",
    "happened_before",
]
