"""
Pulumi modules for the EKS + MSK streaming platform
Function-based modules, one per concern, wired together in __main__.py
"""

from .vpc import create_vpc_resources
from .iam import create_iam_resources, create_oidc_provider
from .eks import create_eks_resources
from .addons import create_addons_resources
from .kafka import create_kafka_resources

__all__ = [
    "create_vpc_resources",
    "create_iam_resources",
    "create_oidc_provider",
    "create_eks_resources",
    "create_addons_resources",
    "create_kafka_resources"
]
