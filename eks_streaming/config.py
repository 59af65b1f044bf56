"""
Configuration management for the EKS + MSK streaming platform
"""

import pulumi
from typing import Dict, Optional

SCRAM_SECRET_PREFIX = "AmazonMSK_"


class Config:
    """Centralized configuration management for the streaming platform deployment"""

    def __init__(self):
        self.config = pulumi.Config()

        # AWS Configuration
        self.aws_region = pulumi.Config("aws").get("region") or "us-west-2"

        # Cluster Configuration
        self.cluster_name = self.config.get("cluster_name") or "streaming-eks"
        self.cluster_version = self.config.get("cluster_version") or "1.30"

        # VPC Configuration
        self.vpc_cidr = self.config.get("vpc_cidr") or "10.0.0.0/16"
        self.availability_zones = self.config.get_object("availability_zones") or [
            f"{self.aws_region}{suffix}" for suffix in ("a", "b", "c")
        ]
        self.private_subnet_cidrs = self.config.get_object("private_subnet_cidrs") or [
            "10.0.1.0/24", "10.0.2.0/24", "10.0.3.0/24"
        ]
        self.public_subnet_cidrs = self.config.get_object("public_subnet_cidrs") or [
            "10.0.101.0/24", "10.0.102.0/24", "10.0.103.0/24"
        ]
        self.single_nat_gateway = self._bool("single_nat_gateway", True)

        # Node Configuration
        self.node_instance_types = self.config.get_object("node_instance_types") or ["t3.medium"]
        self.node_min_size = self._int("node_min_size", 1)
        self.node_desired_size = self._int("node_desired_size", 2)
        self.node_max_size = self._int("node_max_size", 4)
        self.node_disk_size = self._int("node_disk_size", 20)
        self.node_capacity_type = self.config.get("node_capacity_type") or "ON_DEMAND"

        # Cluster access
        self.admin_principal_arn = self.config.get("admin_principal_arn") or ""
        self.access_propagation_seconds = self._int("access_propagation_seconds", 30)

        # Kubernetes add-ons
        self.enable_metrics_server = self._bool("enable_metrics_server", True)
        self.enable_cluster_autoscaler = self._bool("enable_cluster_autoscaler", True)
        self.metrics_server_chart_version = self.config.get("metrics_server_chart_version") or "3.12.1"
        self.cluster_autoscaler_chart_version = self.config.get("cluster_autoscaler_chart_version") or "9.37.0"

        # Logging Configuration
        self.cluster_enabled_log_types = self.config.get_object("cluster_enabled_log_types") or [
            "api", "audit", "authenticator"
        ]
        self.cloudwatch_log_group_retention_in_days = self._int("cloudwatch_log_group_retention_in_days", 30)

        # Kafka (MSK) Configuration
        self.kafka_version = self.config.get("kafka_version") or "3.6.0"
        self.kafka_broker_count = self._int("kafka_broker_count", 3)
        self.kafka_instance_type = self.config.get("kafka_instance_type") or "kafka.t3.small"
        self.kafka_volume_size = self._int("kafka_volume_size", 100)
        self.kafka_username = self.config.get("kafka_username") or "kafka-admin"
        self.kafka_secret_name = (self.config.get("kafka_secret_name")
                                  or f"{SCRAM_SECRET_PREFIX}{self.cluster_name}-scram")
        self.kafka_kms_key_arn = self.config.get("kafka_kms_key_arn") or ""

        # Additional tags
        self.additional_tags = self.config.get_object("tags") or {}

    def _int(self, key: str, default: int) -> int:
        value = self.config.get_int(key)
        return default if value is None else value

    def _bool(self, key: str, default: bool) -> bool:
        value = self.config.get_bool(key)
        return default if value is None else value

    @property
    def kafka_password(self) -> pulumi.Output[str]:
        """SCRAM password, kept as a Pulumi secret"""
        return self.config.require_secret("kafka_password")

    @property
    def common_tags(self) -> Dict[str, str]:
        """Get common tags for all resources"""
        base_tags = {
            "Project": "eks-streaming-platform",
            "Cluster": self.cluster_name,
            "ManagedBy": "pulumi",
        }
        base_tags.update(self.additional_tags)
        return base_tags

    def resolve_admin_principal(self, caller_arn: Optional[str] = None) -> str:
        """Principal granted cluster-admin; falls back to the deploying identity"""
        return self.admin_principal_arn or (caller_arn or "")


def get_config() -> Config:
    """Get the global configuration instance"""
    return Config()
