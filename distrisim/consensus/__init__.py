"""
Consensus protocols: Raft, Paxos, PBFT and the Raft-joint / Multi-Paxos /
EPaxos variants.
"""
from distrisim.consensus.paxos import PaxosAlgorithm, PaxosNode, PaxosRole
from distrisim.consensus.pbft import PBFTAlgorithm, PBFTNode, PBFTPhase
from distrisim.consensus.raft import LogEntry, NodeState, RaftAlgorithm, RaftNode
from distrisim.consensus.variants import ConsensusVariant, ConsensusVariantsAlgorithm, EPaxosPath

__all__ = [
    "PaxosAlgorithm",
    "PaxosNode",
    "PaxosRole",
    "PBFTAlgorithm",
    "PBFTNode",
    "PBFTPhase",
    "LogEntry",
    "NodeState",
    "RaftAlgorithm",
    "RaftNode",
    "ConsensusVariant",
    "ConsensusVariantsAlgorithm",
    "EPaxosPath",
]
