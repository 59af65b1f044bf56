"""
Addons Module
metrics-server and Cluster Autoscaler, installed through Helm
"""

from .functions import create_addons_resources

__all__ = ["create_addons_resources"]
