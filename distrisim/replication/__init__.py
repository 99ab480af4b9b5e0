"""
Replication models: quorums, replicated log, gossip, Merkle anti-entropy,
CRDTs and eventual consistency.
"""
from distrisim.replication.crdts import CRDTAlgorithm, GCounter, ORSet, RGA
from distrisim.replication.eventual import ConsistencyLevel, EventualConsistencyAlgorithm
from distrisim.replication.gossip import GossipAntiEntropyAlgorithm, GossipMode
from distrisim.replication.merkle import MerkleAntiEntropyAlgorithm
from distrisim.replication.quorum import QuorumConfig, QuorumReplicationAlgorithm, calculate_quorum
from distrisim.replication.replication_log import ReplicationLogAlgorithm

__all__ = [
    "CRDTAlgorithm",
    "GCounter",
    "ORSet",
    "RGA",
    "ConsistencyLevel",
    "EventualConsistencyAlgorithm",
    "GossipAntiEntropyAlgorithm",
    "GossipMode",
    "MerkleAntiEntropyAlgorithm",
    "QuorumConfig",
    "QuorumReplicationAlgorithm",
    "calculate_quorum",
    "ReplicationLogAlgorithm",
]
