"""
Protocol catalog.

Maps every scenario concept to the protocol model that simulates it and the
binder wiring its scenario events. ``initialState`` keys of a scenario are
camelCase; each entry lists the ones it understands and the constructor
argument they feed. Unknown keys are ignored.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional

from distrisim import bindings
from distrisim.balancer import LoadBalancingAlgorithm
from distrisim.clocks import ChandyLamportAlgorithm, LamportClocksAlgorithm, VectorClocksAlgorithm
from distrisim.consensus import ConsensusVariantsAlgorithm, PaxosAlgorithm, PBFTAlgorithm, RaftAlgorithm
from distrisim.coordination import (
    DistributedLockAlgorithm,
    DistributedTransactionsAlgorithm,
    TwoPhaseCommitAlgorithm,
)
from distrisim.exceptions import UnknownProtocolError
from distrisim.network import FailureDetectorsAlgorithm, NetworkPartitionsAlgorithm
from distrisim.replication import (
    CRDTAlgorithm,
    EventualConsistencyAlgorithm,
    GossipAntiEntropyAlgorithm,
    MerkleAntiEntropyAlgorithm,
    QuorumReplicationAlgorithm,
    ReplicationLogAlgorithm,
)
from distrisim.sharding import ConsistentHashingAlgorithm, ShardingRebalancingAlgorithm

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProtocolSpec:
    """
    How to build and drive one concept.

    Attributes:
        concept: Scenario concept id
        factory: Protocol class
        binder: Registers the scenario event handlers
        params: ``initialState`` key -> constructor keyword
        seeded: Whether the constructor takes a ``seed``
    """
    concept: str
    factory: Callable[..., Any]
    binder: bindings.Binder
    params: Mapping[str, str] = field(default_factory=dict)
    seeded: bool = False

    def create(self, initial_state: Optional[Dict[str, Any]] = None, seed: Optional[int] = None):
        """Instantiate the protocol from a scenario's ``initialState``."""
        kwargs = {
            self.params[key]: value
            for key, value in (initial_state or {}).items()
            if key in self.params
        }
        if self.seeded and seed is not None:
            kwargs.setdefault("seed", seed)
        logger.debug(f"Creating {self.concept} with {kwargs}")
        return self.factory(**kwargs)


NODE_COUNT = {"nodeCount": "node_count"}

_SPECS = [
    ProtocolSpec("raft", RaftAlgorithm, bindings.bind_raft, NODE_COUNT),
    ProtocolSpec(
        "paxos",
        PaxosAlgorithm,
        bindings.bind_paxos,
        {
            "proposerCount": "proposer_count",
            "acceptorCount": "acceptor_count",
            "learnerCount": "learner_count",
        },
    ),
    ProtocolSpec("pbft", PBFTAlgorithm, bindings.bind_pbft, NODE_COUNT),
    ProtocolSpec(
        "consensus-variants",
        ConsensusVariantsAlgorithm,
        bindings.bind_consensus_variants,
        NODE_COUNT,
        seeded=True,
    ),
    ProtocolSpec(
        "quorum-replication",
        QuorumReplicationAlgorithm,
        bindings.bind_quorum_replication,
        {**NODE_COUNT, "replicationFactor": "replication_factor"},
    ),
    ProtocolSpec(
        "replication-log",
        ReplicationLogAlgorithm,
        bindings.bind_replication_log,
        {"replicaCount": "replica_count"},
    ),
    ProtocolSpec(
        "gossip-anti-entropy",
        GossipAntiEntropyAlgorithm,
        bindings.bind_gossip,
        NODE_COUNT,
        seeded=True,
    ),
    ProtocolSpec(
        "merkle-anti-entropy",
        MerkleAntiEntropyAlgorithm,
        bindings.bind_merkle,
        {"replicaCount": "replica_count", "keyCount": "key_count"},
    ),
    ProtocolSpec("crdts", CRDTAlgorithm, bindings.bind_crdts, {"replicaCount": "replica_count"}),
    ProtocolSpec(
        "eventual-consistency",
        EventualConsistencyAlgorithm,
        bindings.bind_eventual_consistency,
        {**NODE_COUNT, "replicationFactor": "replication_factor"},
        seeded=True,
    ),
    ProtocolSpec(
        "sharding-rebalancing",
        ShardingRebalancingAlgorithm,
        bindings.bind_sharding,
        {**NODE_COUNT, "strategy": "strategy", "keyCount": "key_count"},
    ),
    ProtocolSpec(
        "consistent-hashing",
        ConsistentHashingAlgorithm,
        bindings.bind_consistent_hashing,
        {"serverCount": "server_count", "virtualNodes": "virtual_nodes"},
    ),
    ProtocolSpec(
        "distributed-locking",
        DistributedLockAlgorithm,
        bindings.bind_lock,
        {"clientCount": "client_count", "leaseTtlMs": "lease_ttl_ms"},
    ),
    ProtocolSpec(
        "two-phase-commit",
        TwoPhaseCommitAlgorithm,
        bindings.bind_two_phase_commit,
        {"participantCount": "participant_count"},
    ),
    ProtocolSpec(
        "distributed-transactions",
        DistributedTransactionsAlgorithm,
        bindings.bind_transactions,
        {"participantCount": "participant_count"},
    ),
    ProtocolSpec("lamport-clocks", LamportClocksAlgorithm, bindings.bind_lamport, NODE_COUNT),
    ProtocolSpec(
        "vector-clocks",
        VectorClocksAlgorithm,
        bindings.bind_vector_clocks,
        {"processCount": "process_count"},
    ),
    ProtocolSpec("chandy-lamport", ChandyLamportAlgorithm, bindings.bind_chandy_lamport, NODE_COUNT),
    ProtocolSpec(
        "failure-detectors",
        FailureDetectorsAlgorithm,
        bindings.bind_failure_detectors,
        {
            **NODE_COUNT,
            "phiThreshold": "phi_threshold",
            "heartbeatIntervalMs": "heartbeat_interval_ms",
        },
    ),
    ProtocolSpec(
        "network-partitions",
        NetworkPartitionsAlgorithm,
        bindings.bind_partitions,
        NODE_COUNT,
        seeded=True,
    ),
    ProtocolSpec(
        "load-balancing",
        LoadBalancingAlgorithm,
        bindings.bind_load_balancing,
        {"workerCount": "worker_count", "capacity": "capacity", "maxQueue": "max_queue"},
    ),
]

PROTOCOLS: Dict[str, ProtocolSpec] = {spec.concept: spec for spec in _SPECS}


def available_concepts() -> List[str]:
    return sorted(PROTOCOLS)


def get_protocol_spec(concept: str) -> ProtocolSpec:
    """
    Look up a concept.

    Raises:
        UnknownProtocolError: If no protocol simulates ``concept``
    """
    spec = PROTOCOLS.get(concept)
    if spec is None:
        raise UnknownProtocolError(concept, available_concepts())
    return spec


def create(concept: str, initial_state: Optional[Dict[str, Any]] = None, seed: Optional[int] = None):
    """Build the protocol model for ``concept``."""
    return get_protocol_spec(concept).create(initial_state, seed)
