"""
Data placement: range/hash sharding with rebalancing and consistent hashing.
"""
from distrisim.sharding.consistent_hash import ConsistentHashingAlgorithm, ring_hash
from distrisim.sharding.rebalancing import ShardingRebalancingAlgorithm, ShardingStrategy

__all__ = [
    "ConsistentHashingAlgorithm",
    "ring_hash",
    "ShardingRebalancingAlgorithm",
    "ShardingStrategy",
]
