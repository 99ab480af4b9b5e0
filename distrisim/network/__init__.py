"""
Network faults: failure detection and partitions.
"""
from distrisim.network.failure_detectors import FailureDetectorsAlgorithm
from distrisim.network.partitions import NetworkPartitionsAlgorithm

__all__ = [
    "FailureDetectorsAlgorithm",
    "NetworkPartitionsAlgorithm",
]
