"""
EKS Module Functions
Creates the EKS cluster, its managed node group and managed add-ons,
and grants an administrator principal access through EKS access entries
"""

import asyncio
import pulumi
import pulumi_aws as aws
from typing import Any, Dict, List

CLUSTER_ADMIN_POLICY_ARN = "arn:aws:eks::aws:cluster-access-policy/AmazonEKSClusterAdminPolicy"


def autoscaler_discovery_tags(cluster_name: str) -> Dict[str, str]:
    """Tags Cluster Autoscaler uses to auto-discover the node group's ASG"""
    return {
        "k8s.io/cluster-autoscaler/enabled": "true",
        f"k8s.io/cluster-autoscaler/{cluster_name}": "owned"
    }


def create_cloudwatch_log_group(name: str, retention_days: int = 30, tags: Dict[str, str] = None) -> Dict[str, Any]:
    """
    Create CloudWatch log group for EKS control plane logs

    Args:
        name: Cluster name
        retention_days: Log retention in days
        tags: Additional tags

    Returns:
        Dict with log group resource and outputs
    """
    tags = tags or {}

    log_group = aws.cloudwatch.LogGroup(
        f"{name}-eks-log-group",
        name=f"/aws/eks/{name}/cluster",
        retention_in_days=retention_days,
        tags={
            **tags,
            "Name": f"{name}-eks-log-group",
            "Module": "eks"
        }
    )

    return {
        "log_group": log_group,
        "log_group_name": log_group.name
    }


def create_kms_key(name: str, tags: Dict[str, str] = None) -> Dict[str, Any]:
    """Create KMS key for envelope encryption of Kubernetes secrets"""
    tags = tags or {}

    kms_key = aws.kms.Key(
        f"{name}-eks-kms-key",
        description=f"EKS Secret Encryption Key for {name}",
        enable_key_rotation=True,
        tags={
            **tags,
            "Name": f"{name}-eks-kms-key",
            "Module": "eks"
        }
    )

    kms_alias = aws.kms.Alias(
        f"{name}-eks-kms-alias",
        name=f"alias/{name}-eks",
        target_key_id=kms_key.key_id
    )

    return {
        "kms_key": kms_key,
        "kms_alias": kms_alias,
        "kms_key_arn": kms_key.arn
    }


def create_eks_cluster(name: str, version: str, role_arn: pulumi.Output[str],
                       subnet_ids: List[pulumi.Output[str]], security_group_ids: List[pulumi.Output[str]],
                       kms_key_arn: pulumi.Output[str],
                       enabled_log_types: List[str] = None,
                       endpoint_private_access: bool = True,
                       endpoint_public_access: bool = True,
                       public_access_cidrs: List[str] = None,
                       depends_on: List[Any] = None,
                       tags: Dict[str, str] = None) -> Dict[str, Any]:
    """
    Create EKS cluster

    Args:
        name: Cluster name
        version: Kubernetes version
        role_arn: IAM role ARN for cluster
        subnet_ids: List of subnet IDs
        security_group_ids: List of security group IDs
        kms_key_arn: KMS key ARN for encryption
        enabled_log_types: List of enabled log types
        endpoint_private_access: Enable private API endpoint
        endpoint_public_access: Enable public API endpoint
        public_access_cidrs: List of CIDRs for public access
        depends_on: Resources that must exist first (log group, role policy)
        tags: Additional tags

    Returns:
        Dict with cluster resource and outputs
    """
    tags = tags or {}
    enabled_log_types = enabled_log_types or ["api", "audit", "authenticator"]
    public_access_cidrs = public_access_cidrs or ["0.0.0.0/0"]

    cluster = aws.eks.Cluster(
        f"{name}-cluster",
        name=name,
        version=version,
        role_arn=role_arn,
        vpc_config=aws.eks.ClusterVpcConfigArgs(
            subnet_ids=subnet_ids,
            endpoint_private_access=endpoint_private_access,
            endpoint_public_access=endpoint_public_access,
            public_access_cidrs=public_access_cidrs,
            security_group_ids=security_group_ids
        ),
        access_config=aws.eks.ClusterAccessConfigArgs(
            authentication_mode="API_AND_CONFIG_MAP",
            # Admin access is granted explicitly with grant_cluster_admin
            bootstrap_cluster_creator_admin_permissions=False
        ),
        enabled_cluster_log_types=enabled_log_types,
        encryption_config=aws.eks.ClusterEncryptionConfigArgs(
            provider=aws.eks.ClusterEncryptionConfigProviderArgs(
                key_arn=kms_key_arn
            ),
            resources=["secrets"]
        ),
        tags={
            **tags,
            "Name": f"{name}-cluster",
            "Module": "eks"
        },
        opts=pulumi.ResourceOptions(depends_on=depends_on or [])
    )

    return {
        "cluster": cluster,
        "cluster_id": cluster.id,
        "cluster_name": cluster.name,
        "cluster_arn": cluster.arn,
        "cluster_endpoint": cluster.endpoint,
        "cluster_version": cluster.version,
        "cluster_certificate_authority_data": cluster.certificate_authority.data
    }


def create_node_group(name: str, cluster_name: pulumi.Output[str], role_arn: pulumi.Output[str],
                      subnet_ids: List[pulumi.Output[str]], instance_types: List[str],
                      desired_size: int, max_size: int, min_size: int,
                      disk_size: int, capacity_type: str = "ON_DEMAND",
                      depends_on: List[Any] = None,
                      tags: Dict[str, str] = None) -> Dict[str, Any]:
    """
    Create EKS managed node group

    The node group carries the Cluster Autoscaler discovery tags. The
    desired size is left to the autoscaler after creation.

    Args:
        name: Node group name prefix
        cluster_name: EKS cluster name
        role_arn: IAM role ARN for node group
        subnet_ids: List of subnet IDs
        instance_types: List of EC2 instance types
        desired_size: Desired number of nodes
        max_size: Maximum number of nodes
        min_size: Minimum number of nodes
        disk_size: EBS volume size in GB
        capacity_type: Capacity type (ON_DEMAND or SPOT)
        depends_on: Resources that must exist first (node role policies)
        tags: Additional tags

    Returns:
        Dict with node group resource and outputs
    """
    tags = tags or {}

    node_group = aws.eks.NodeGroup(
        f"{name}-node-group",
        cluster_name=cluster_name,
        node_group_name=f"{name}-nodes",
        node_role_arn=role_arn,
        subnet_ids=subnet_ids,
        capacity_type=capacity_type,
        instance_types=instance_types,
        disk_size=disk_size,
        scaling_config=aws.eks.NodeGroupScalingConfigArgs(
            desired_size=desired_size,
            max_size=max_size,
            min_size=min_size
        ),
        update_config=aws.eks.NodeGroupUpdateConfigArgs(
            max_unavailable_percentage=25
        ),
        labels={"role": "general"},
        tags={
            **tags,
            **autoscaler_discovery_tags(name),
            "Name": f"{name}-node-group",
            "Module": "eks"
        },
        opts=pulumi.ResourceOptions(
            depends_on=depends_on or [],
            ignore_changes=["scalingConfig.desiredSize"]
        )
    )

    return {
        "node_group": node_group,
        "node_group_name": node_group.node_group_name,
        "node_group_arn": node_group.arn,
        "node_group_status": node_group.status
    }


def create_eks_addons(name: str, cluster_name: pulumi.Output[str], node_group=None,
                      tags: Dict[str, str] = None) -> Dict[str, Any]:
    """
    Create EKS managed add-ons (vpc-cni, coredns, kube-proxy)

    CoreDNS waits for the node group since its pods need somewhere to run.
    """
    tags = tags or {}
    addons = {}

    for key, addon_name in (("vpc_cni", "vpc-cni"), ("coredns", "coredns"), ("kube_proxy", "kube-proxy")):
        opts = None
        if addon_name == "coredns" and node_group is not None:
            opts = pulumi.ResourceOptions(depends_on=[node_group])

        addons[key] = aws.eks.Addon(
            f"{name}-{addon_name}-addon",
            cluster_name=cluster_name,
            addon_name=addon_name,
            resolve_conflicts_on_create="OVERWRITE",
            resolve_conflicts_on_update="OVERWRITE",
            tags={
                **tags,
                "Name": f"{name}-{addon_name}-addon",
                "Module": "eks"
            },
            opts=opts
        )

    return {"addons": addons}


def grant_cluster_admin(name: str, cluster_name: pulumi.Output[str], principal_arn: str,
                        cluster=None, tags: Dict[str, str] = None) -> Dict[str, Any]:
    """
    Grant a principal cluster-admin through an EKS access entry

    Args:
        name: Resource name prefix
        cluster_name: EKS cluster name
        principal_arn: IAM user or role ARN to grant access to
        cluster: Cluster resource the entry depends on
        tags: Additional tags

    Returns:
        Dict with the access entry and policy association
    """
    tags = tags or {}

    access_entry = aws.eks.AccessEntry(
        f"{name}-admin-access",
        cluster_name=cluster_name,
        principal_arn=principal_arn,
        type="STANDARD",
        tags={
            **tags,
            "Name": f"{name}-admin-access",
            "Module": "eks"
        },
        opts=pulumi.ResourceOptions(depends_on=[cluster] if cluster is not None else [])
    )

    policy_association = aws.eks.AccessPolicyAssociation(
        f"{name}-admin-policy",
        cluster_name=cluster_name,
        principal_arn=principal_arn,
        policy_arn=CLUSTER_ADMIN_POLICY_ARN,
        access_scope=aws.eks.AccessPolicyAssociationAccessScopeArgs(type="cluster"),
        opts=pulumi.ResourceOptions(depends_on=[access_entry])
    )

    return {
        "access_entry": access_entry,
        "policy_association": policy_association,
        "principal_arn": principal_arn
    }


async def pause_for_propagation(seconds: int, value: Any) -> Any:
    """
    Wait out the propagation delay, then hand back value

    Awaited inside an apply so other outputs keep resolving meanwhile.
    Skipped during previews, where nothing has been granted yet.
    """
    if seconds > 0 and not pulumi.runtime.is_dry_run():
        pulumi.log.info(f"Waiting {seconds}s for cluster access to propagate")
        await asyncio.sleep(seconds)
    return value


def wait_for_access_propagation(policy_association, cluster_endpoint: pulumi.Output[str],
                                seconds: int = 30) -> pulumi.Output[str]:
    """
    Cluster endpoint that resolves only once access has propagated

    Kubernetes resources built from the returned endpoint are created after
    the admin policy association exists and the fixed delay has passed.

    Args:
        policy_association: Access policy association to wait on
        cluster_endpoint: EKS API server endpoint
        seconds: Fixed delay after the association is created

    Returns:
        The endpoint, gated on the association and the delay
    """
    return pulumi.Output.all(policy_association.id, cluster_endpoint).apply(
        lambda args: pause_for_propagation(seconds, args[1])
    )


def create_eks_resources(cluster_name: str, cluster_version: str,
                         cluster_role_arn: pulumi.Output[str], node_group_role_arn: pulumi.Output[str],
                         cluster_subnet_ids: List[pulumi.Output[str]],
                         node_subnet_ids: List[pulumi.Output[str]],
                         cluster_security_group_id: pulumi.Output[str],
                         node_instance_types: List[str],
                         node_desired_size: int, node_max_size: int, node_min_size: int,
                         node_disk_size: int, capacity_type: str = "ON_DEMAND",
                         admin_principal_arn: str = "",
                         access_propagation_seconds: int = 30,
                         cluster_enabled_log_types: List[str] = None,
                         cloudwatch_log_group_retention_in_days: int = 30,
                         cluster_dependencies: List[Any] = None,
                         node_dependencies: List[Any] = None,
                         tags: Dict[str, str] = None) -> Dict[str, Any]:
    """
    Create complete EKS infrastructure

    Args:
        cluster_name: EKS cluster name
        cluster_version: Kubernetes version
        cluster_role_arn: IAM role ARN for cluster
        node_group_role_arn: IAM role ARN for node group
        cluster_subnet_ids: Subnets for the control plane ENIs
        node_subnet_ids: Subnets for worker nodes
        cluster_security_group_id: Additional cluster security group ID
        node_instance_types: List of EC2 instance types
        node_desired_size: Desired number of nodes
        node_max_size: Maximum number of nodes
        node_min_size: Minimum number of nodes
        node_disk_size: EBS volume size in GB
        capacity_type: Capacity type (ON_DEMAND or SPOT)
        admin_principal_arn: Principal granted cluster-admin
        access_propagation_seconds: Delay after the admin grant
        cluster_enabled_log_types: List of enabled log types
        cloudwatch_log_group_retention_in_days: Log retention in days
        cluster_dependencies: Extra resources the cluster waits for
        node_dependencies: Extra resources the node group waits for
        tags: Additional tags

    Returns:
        Dict with all EKS resources and outputs
    """
    tags = tags or {}

    log_group_result = create_cloudwatch_log_group(
        cluster_name,
        cloudwatch_log_group_retention_in_days,
        tags
    )

    kms_result = create_kms_key(cluster_name, tags)

    cluster_result = create_eks_cluster(
        name=cluster_name,
        version=cluster_version,
        role_arn=cluster_role_arn,
        subnet_ids=cluster_subnet_ids,
        security_group_ids=[cluster_security_group_id],
        kms_key_arn=kms_result["kms_key_arn"],
        enabled_log_types=cluster_enabled_log_types,
        depends_on=[log_group_result["log_group"], *(cluster_dependencies or [])],
        tags=tags
    )

    node_group_result = create_node_group(
        name=cluster_name,
        cluster_name=cluster_result["cluster_name"],
        role_arn=node_group_role_arn,
        subnet_ids=node_subnet_ids,
        instance_types=node_instance_types,
        desired_size=node_desired_size,
        max_size=node_max_size,
        min_size=node_min_size,
        disk_size=node_disk_size,
        capacity_type=capacity_type,
        depends_on=node_dependencies,
        tags=tags
    )

    addons_result = create_eks_addons(
        name=cluster_name,
        cluster_name=cluster_result["cluster_name"],
        node_group=node_group_result["node_group"],
        tags=tags
    )

    access_result = grant_cluster_admin(
        name=cluster_name,
        cluster_name=cluster_result["cluster_name"],
        principal_arn=admin_principal_arn,
        cluster=cluster_result["cluster"],
        tags=tags
    )

    ready_endpoint = wait_for_access_propagation(
        access_result["policy_association"],
        cluster_result["cluster_endpoint"],
        access_propagation_seconds
    )

    pulumi.log.info(
        f"EKS {cluster_name} v{cluster_version}: node group {node_min_size}/{node_desired_size}/{node_max_size} "
        f"of {', '.join(node_instance_types)}"
    )

    return {
        "cluster_id": cluster_result["cluster_id"],
        "cluster_name": cluster_result["cluster_name"],
        "cluster_arn": cluster_result["cluster_arn"],
        "cluster_endpoint": cluster_result["cluster_endpoint"],
        "cluster_version_output": cluster_result["cluster_version"],
        "cluster_certificate_authority_data": cluster_result["cluster_certificate_authority_data"],
        "ready_endpoint": ready_endpoint,
        "node_group_name": node_group_result["node_group_name"],
        "node_group_arn": node_group_result["node_group_arn"],
        "node_group_status": node_group_result["node_group_status"],
        "kms_key_arn": kms_result["kms_key_arn"],
        # Keep references to resources for dependencies
        "_log_group": log_group_result["log_group"],
        "_kms_key": kms_result["kms_key"],
        "_cluster": cluster_result["cluster"],
        "_node_group": node_group_result["node_group"],
        "_addons": addons_result["addons"],
        "_access_entry": access_result["access_entry"],
        "_policy_association": access_result["policy_association"]
    }
