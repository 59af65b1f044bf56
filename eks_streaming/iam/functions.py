"""
IAM Module Functions
IAM roles for the EKS cluster and node group, the cluster OIDC provider,
and IAM roles for service accounts (IRSA) federated through it
"""

import json
import pulumi
import pulumi_aws as aws
import pulumi_tls as tls
from typing import Any, Dict

NODE_POLICIES = [
    ("worker", "arn:aws:iam::aws:policy/AmazonEKSWorkerNodePolicy"),
    ("cni", "arn:aws:iam::aws:policy/AmazonEKS_CNI_Policy"),
    ("registry", "arn:aws:iam::aws:policy/AmazonEC2ContainerRegistryReadOnly"),
    ("ssm", "arn:aws:iam::aws:policy/AmazonSSMManagedInstanceCore")
]


def service_trust_policy(service: str) -> str:
    """Assume-role policy letting an AWS service principal assume the role"""
    return json.dumps({
        "Version": "2012-10-17",
        "Statement": [{
            "Action": "sts:AssumeRole",
            "Effect": "Allow",
            "Principal": {"Service": service}
        }]
    })


def irsa_trust_policy(oidc_provider_arn: str, oidc_provider_url: str,
                      namespace: str, service_account: str) -> str:
    """
    Web-identity trust policy bound to a single Kubernetes service account

    Args:
        oidc_provider_arn: ARN of the cluster's IAM OIDC provider
        oidc_provider_url: Issuer URL, with or without the https:// scheme
        namespace: Service account namespace
        service_account: Service account name

    Returns:
        JSON policy document
    """
    issuer = oidc_provider_url.replace("https://", "")
    return json.dumps({
        "Version": "2012-10-17",
        "Statement": [{
            "Effect": "Allow",
            "Principal": {"Federated": oidc_provider_arn},
            "Action": "sts:AssumeRoleWithWebIdentity",
            "Condition": {
                "StringEquals": {
                    f"{issuer}:sub": f"system:serviceaccount:{namespace}:{service_account}",
                    f"{issuer}:aud": "sts.amazonaws.com"
                }
            }
        }]
    })


def create_cluster_role(name: str, tags: Dict[str, str] = None) -> Dict[str, Any]:
    """
    Create IAM role for EKS cluster

    Args:
        name: Role name
        tags: Additional tags

    Returns:
        Dict with role resource and outputs
    """
    tags = tags or {}

    role = aws.iam.Role(
        f"{name}-cluster-role",
        name=f"{name}-cluster-role",
        assume_role_policy=service_trust_policy("eks.amazonaws.com"),
        tags={
            **tags,
            "Name": f"{name}-cluster-role",
            "Module": "iam"
        }
    )

    policy_attachment = aws.iam.RolePolicyAttachment(
        f"{name}-cluster-policy",
        policy_arn="arn:aws:iam::aws:policy/AmazonEKSClusterPolicy",
        role=role.name
    )

    return {
        "role": role,
        "policy_attachment": policy_attachment,
        "role_arn": role.arn,
        "role_name": role.name
    }


def create_node_group_role(name: str, tags: Dict[str, str] = None) -> Dict[str, Any]:
    """
    Create IAM role for EKS node group

    Args:
        name: Role name prefix
        tags: Additional tags

    Returns:
        Dict with role resource and outputs
    """
    tags = tags or {}

    role = aws.iam.Role(
        f"{name}-ng-role",
        name=f"{name}-ng-role",
        assume_role_policy=service_trust_policy("ec2.amazonaws.com"),
        tags={
            **tags,
            "Name": f"{name}-node-group-role",
            "Module": "iam"
        }
    )

    policy_attachments = {}
    for policy_name, policy_arn in NODE_POLICIES:
        attachment = aws.iam.RolePolicyAttachment(
            f"{name}-node-{policy_name}-policy",
            policy_arn=policy_arn,
            role=role.name
        )
        policy_attachments[f"{policy_name}_policy"] = attachment

    return {
        "role": role,
        "policy_attachments": policy_attachments,
        "role_arn": role.arn,
        "role_name": role.name
    }


def create_oidc_provider(name: str, cluster, tags: Dict[str, str] = None) -> Dict[str, Any]:
    """
    Create the IAM OIDC provider that federates the cluster's service accounts

    Args:
        name: Cluster name
        cluster: EKS cluster resource
        tags: Additional tags

    Returns:
        Dict with the provider resource and its ARN / URL
    """
    tags = tags or {}
    oidc_issuer = cluster.identities[0].oidcs[0].issuer

    certificate = tls.get_certificate_output(url=oidc_issuer)
    thumbprint = certificate.certificates.apply(lambda certs: certs[0].sha1_fingerprint)

    provider = aws.iam.OpenIdConnectProvider(
        f"{name}-oidc-provider",
        url=oidc_issuer,
        client_id_lists=["sts.amazonaws.com"],
        thumbprint_lists=[thumbprint],
        tags={
            **tags,
            "Name": f"{name}-oidc-provider",
            "Module": "iam"
        },
        opts=pulumi.ResourceOptions(depends_on=[cluster])
    )

    return {
        "oidc_provider": provider,
        "oidc_provider_arn": provider.arn,
        "oidc_provider_url": provider.url,
        "oidc_issuer": oidc_issuer
    }


def create_irsa_role(name: str, oidc_provider_arn: pulumi.Output[str], oidc_provider_url: pulumi.Output[str],
                     namespace: str, service_account: str, policy_document: Dict[str, Any],
                     tags: Dict[str, str] = None) -> Dict[str, Any]:
    """
    Create an IAM role assumable only by one Kubernetes service account

    Args:
        name: Resource name prefix, e.g. "<cluster>-cluster-autoscaler"
        oidc_provider_arn: ARN of the cluster OIDC provider
        oidc_provider_url: URL of the cluster OIDC provider
        namespace: Service account namespace
        service_account: Service account name
        policy_document: Permissions granted to the role
        tags: Additional tags

    Returns:
        Dict with role, policy and attachment resources
    """
    tags = tags or {}

    role = aws.iam.Role(
        f"{name}-irsa-role",
        name=f"{name}-irsa",
        assume_role_policy=pulumi.Output.all(oidc_provider_arn, oidc_provider_url).apply(
            lambda args: irsa_trust_policy(args[0], args[1], namespace, service_account)
        ),
        tags={
            **tags,
            "Name": f"{name}-irsa",
            "Module": "iam"
        }
    )

    policy = aws.iam.Policy(
        f"{name}-policy",
        name=f"{name}-policy",
        policy=json.dumps(policy_document),
        tags={
            **tags,
            "Name": f"{name}-policy",
            "Module": "iam"
        }
    )

    attachment = aws.iam.RolePolicyAttachment(
        f"{name}-policy-attachment",
        role=role.name,
        policy_arn=policy.arn
    )

    return {
        "role": role,
        "policy": policy,
        "attachment": attachment,
        "role_arn": role.arn
    }


def create_iam_resources(cluster_name: str, tags: Dict[str, str] = None) -> Dict[str, Any]:
    """
    Create the IAM roles the cluster and node group need before they exist

    The OIDC provider and IRSA roles depend on the cluster and are created
    afterwards with create_oidc_provider / create_irsa_role.

    Args:
        cluster_name: EKS cluster name
        tags: Additional tags

    Returns:
        Dict with all IAM resources and outputs
    """
    tags = tags or {}

    cluster_role_result = create_cluster_role(cluster_name, tags)
    node_role_result = create_node_group_role(cluster_name, tags)

    return {
        "cluster_role_arn": cluster_role_result["role_arn"],
        "cluster_role_name": cluster_role_result["role_name"],
        "node_group_role_arn": node_role_result["role_arn"],
        "node_group_role_name": node_role_result["role_name"],
        # Keep references to resources for dependencies
        "_cluster_role": cluster_role_result["role"],
        "_node_role": node_role_result["role"],
        "_cluster_policy_attachment": cluster_role_result["policy_attachment"],
        "_node_policy_attachments": node_role_result["policy_attachments"]
    }
