"""
EKS Module
Cluster, managed node group, managed add-ons and administrator access
"""

from .functions import create_eks_resources, grant_cluster_admin, wait_for_access_propagation

__all__ = ["create_eks_resources", "grant_cluster_admin", "wait_for_access_propagation"]
