"""
Coordination: distributed locks, two-phase commit, 3PC and sagas.
"""
from distrisim.coordination.lock import DistributedLockAlgorithm
from distrisim.coordination.transactions import DistributedTransactionsAlgorithm
from distrisim.coordination.two_phase_commit import Decision, TwoPhaseCommitAlgorithm, Vote

__all__ = [
    "DistributedLockAlgorithm",
    "DistributedTransactionsAlgorithm",
    "Decision",
    "TwoPhaseCommitAlgorithm",
    "Vote",
]
