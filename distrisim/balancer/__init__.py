"""
Request load balancing over a worker pool.
"""
from distrisim.balancer.load_balancer import LoadBalancingAlgorithm

__all__ = ["LoadBalancingAlgorithm"]
