"""
IAM Module for EKS
Cluster and node roles, OIDC federation and service-account roles
"""

from .functions import create_iam_resources, create_oidc_provider, create_irsa_role

__all__ = ["create_iam_resources", "create_oidc_provider", "create_irsa_role"]
