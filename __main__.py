"""
EKS + MSK Streaming Platform
Network, cluster, autoscaling add-ons and a SASL/SCRAM Kafka cluster
"""
import pulumi
import pulumi_aws as aws

from eks_streaming.config import get_config
from eks_streaming.validation import validate_config
from eks_streaming.vpc import create_vpc_resources
from eks_streaming.iam import create_iam_resources, create_oidc_provider
from eks_streaming.eks import create_eks_resources
from eks_streaming.addons import create_addons_resources
from eks_streaming.kafka import create_kafka_resources

# Configuration
config = get_config()
validate_config(config)
tags = config.common_tags

admin_principal_arn = config.resolve_admin_principal(aws.get_caller_identity().arn)

# 1. Network infrastructure
network = create_vpc_resources(
    cluster_name=config.cluster_name,
    vpc_cidr=config.vpc_cidr,
    availability_zones=config.availability_zones,
    private_subnet_cidrs=config.private_subnet_cidrs,
    public_subnet_cidrs=config.public_subnet_cidrs,
    single_nat_gateway=config.single_nat_gateway,
    tags=tags
)

# 2. IAM roles for the control plane and the nodes
iam = create_iam_resources(config.cluster_name, tags)

# 3. EKS cluster, node group and admin access
eks = create_eks_resources(
    cluster_name=config.cluster_name,
    cluster_version=config.cluster_version,
    cluster_role_arn=iam["cluster_role_arn"],
    node_group_role_arn=iam["node_group_role_arn"],
    cluster_subnet_ids=network["private_subnet_ids"] + network["public_subnet_ids"],
    node_subnet_ids=network["private_subnet_ids"],
    cluster_security_group_id=network["cluster_security_group_id"],
    node_instance_types=config.node_instance_types,
    node_desired_size=config.node_desired_size,
    node_max_size=config.node_max_size,
    node_min_size=config.node_min_size,
    node_disk_size=config.node_disk_size,
    capacity_type=config.node_capacity_type,
    admin_principal_arn=admin_principal_arn,
    access_propagation_seconds=config.access_propagation_seconds,
    cluster_enabled_log_types=config.cluster_enabled_log_types,
    cloudwatch_log_group_retention_in_days=config.cloudwatch_log_group_retention_in_days,
    cluster_dependencies=[iam["_cluster_policy_attachment"]],
    node_dependencies=[*iam["_node_policy_attachments"].values(), *network["_private_route_tables"]],
    tags=tags
)

# 4. OIDC federation for service-account roles
oidc = create_oidc_provider(config.cluster_name, eks["_cluster"], tags)

# 5. metrics-server and Cluster Autoscaler
addons = create_addons_resources(
    cluster_name=config.cluster_name,
    cluster_endpoint=eks["ready_endpoint"],
    cluster_ca_data=eks["cluster_certificate_authority_data"],
    region=config.aws_region,
    oidc_provider_arn=oidc["oidc_provider_arn"],
    oidc_provider_url=oidc["oidc_provider_url"],
    enable_metrics_server=config.enable_metrics_server,
    enable_cluster_autoscaler=config.enable_cluster_autoscaler,
    metrics_server_chart_version=config.metrics_server_chart_version,
    cluster_autoscaler_chart_version=config.cluster_autoscaler_chart_version,
    depends_on=[eks["_node_group"], eks["_addons"]["coredns"]],
    tags=tags
)

# 6. Kafka (MSK) with SASL/SCRAM
kafka = create_kafka_resources(
    cluster_name=config.cluster_name,
    vpc_id=network["vpc_id"],
    vpc_cidr=config.vpc_cidr,
    client_subnet_ids=network["private_subnet_ids"],
    kafka_version=config.kafka_version,
    broker_count=config.kafka_broker_count,
    instance_type=config.kafka_instance_type,
    volume_size=config.kafka_volume_size,
    username=config.kafka_username,
    password=config.kafka_password,
    secret_name=config.kafka_secret_name,
    existing_kms_key_arn=config.kafka_kms_key_arn,
    log_retention_in_days=config.cloudwatch_log_group_retention_in_days,
    tags=tags
)

# Exports
pulumi.export("cluster_name", eks["cluster_name"])
pulumi.export("cluster_endpoint", eks["cluster_endpoint"])
pulumi.export("oidc_provider_arn", oidc["oidc_provider_arn"])
pulumi.export("node_group_name", eks["node_group_name"])
pulumi.export("node_group_arn", eks["node_group_arn"])
pulumi.export("node_group_status", eks["node_group_status"])
pulumi.export("vpc_id", network["vpc_id"])
pulumi.export("kafka_bootstrap_brokers_sasl_scram", kafka["bootstrap_brokers_sasl_scram"])
pulumi.export("kafka_cluster_arn", kafka["cluster_arn"])
pulumi.export("kafka_secret_arn", kafka["secret_arn"])
pulumi.export("cluster_autoscaler_role_arn", addons["cluster_autoscaler_role_arn"])
pulumi.export("kubeconfig_command",
    pulumi.Output.concat(
        f"aws eks update-kubeconfig --region {config.aws_region} --name ",
        eks["cluster_name"]
    ))
pulumi.export("addons_installed", addons["installed"])
