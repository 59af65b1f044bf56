"""
VPC Module for EKS and MSK
Network layout: VPC, public/private subnets, NAT, route tables, security groups
"""

from .functions import create_vpc_resources

__all__ = ["create_vpc_resources"]
