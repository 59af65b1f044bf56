"""
Addons Module Functions
Kubernetes controllers installed with Helm once the cluster is reachable:
metrics-server (feeds the HPA) and Cluster Autoscaler (resizes the node group)
"""

import pulumi
import pulumi_kubernetes as k8s
from typing import Any, Dict, List, Optional

from ..iam.functions import create_irsa_role

METRICS_SERVER_REPO = "https://kubernetes-sigs.github.io/metrics-server/"
CLUSTER_AUTOSCALER_REPO = "https://kubernetes.github.io/autoscaler"
CLUSTER_AUTOSCALER_NAMESPACE = "kube-system"
CLUSTER_AUTOSCALER_SERVICE_ACCOUNT = "cluster-autoscaler"


def render_kubeconfig(endpoint: str, ca_data: str, cluster_name: str, region: str) -> str:
    """Kubeconfig authenticating through `aws eks get-token`"""
    return f"""apiVersion: v1
clusters:
- cluster:
    certificate-authority-data: {ca_data}
    server: {endpoint}
  name: {cluster_name}
contexts:
- context:
    cluster: {cluster_name}
    user: {cluster_name}
  name: {cluster_name}
current-context: {cluster_name}
kind: Config
users:
- name: {cluster_name}
  user:
    exec:
      apiVersion: client.authentication.k8s.io/v1beta1
      command: aws
      args:
        - eks
        - get-token
        - --cluster-name
        - {cluster_name}
        - --region
        - {region}
"""


def cluster_autoscaler_policy(cluster_name: str) -> Dict[str, Any]:
    """
    Permissions for Cluster Autoscaler

    Mutating calls are limited to Auto Scaling groups tagged as owned by
    this cluster.
    """
    return {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Effect": "Allow",
                "Action": [
                    "autoscaling:DescribeAutoScalingGroups",
                    "autoscaling:DescribeAutoScalingInstances",
                    "autoscaling:DescribeLaunchConfigurations",
                    "autoscaling:DescribeScalingActivities",
                    "autoscaling:DescribeTags",
                    "ec2:DescribeImages",
                    "ec2:DescribeInstanceTypes",
                    "ec2:DescribeLaunchTemplateVersions",
                    "ec2:GetInstanceTypesFromInstanceRequirements",
                    "eks:DescribeNodegroup"
                ],
                "Resource": "*"
            },
            {
                "Effect": "Allow",
                "Action": [
                    "autoscaling:SetDesiredCapacity",
                    "autoscaling:TerminateInstanceInAutoScalingGroup"
                ],
                "Resource": "*",
                "Condition": {
                    "StringEquals": {
                        f"aws:ResourceTag/k8s.io/cluster-autoscaler/{cluster_name}": "owned"
                    }
                }
            }
        ]
    }


def create_kubernetes_provider(name: str, cluster_endpoint: pulumi.Output[str],
                               cluster_ca_data: pulumi.Output[str], region: str) -> k8s.Provider:
    """
    Create Kubernetes provider for EKS cluster

    Args:
        name: Cluster name
        cluster_endpoint: EKS cluster endpoint, gated on access propagation
        cluster_ca_data: EKS cluster CA certificate data
        region: AWS region of the cluster

    Returns:
        Kubernetes provider instance
    """
    kubeconfig = pulumi.Output.all(cluster_endpoint, cluster_ca_data).apply(
        lambda args: render_kubeconfig(args[0], args[1], name, region)
    )

    return k8s.Provider(
        f"{name}-k8s-provider",
        kubeconfig=kubeconfig
    )


def deploy_metrics_server(name: str, provider: k8s.Provider, chart_version: str,
                          depends_on: List[pulumi.Resource] = None) -> Dict[str, Any]:
    """
    Deploy metrics server using Helm

    Args:
        name: Release name prefix
        provider: Kubernetes provider
        chart_version: metrics-server chart version
        depends_on: Resources the release waits for, such as the node group

    Returns:
        Dict with metrics server resources
    """
    metrics_server = k8s.helm.v3.Release(
        f"{name}-metrics-server",
        repository_opts=k8s.helm.v3.RepositoryOptsArgs(
            repo=METRICS_SERVER_REPO
        ),
        chart="metrics-server",
        version=chart_version,
        name="metrics-server",
        namespace="kube-system",
        values={
            "args": [
                "--kubelet-preferred-address-types=InternalIP,ExternalIP,Hostname",
                "--kubelet-use-node-status-port",
                "--metric-resolution=15s"
            ]
        },
        opts=pulumi.ResourceOptions(provider=provider, depends_on=depends_on or [])
    )

    return {
        "metrics_server": metrics_server,
        "status": "enabled"
    }


def deploy_cluster_autoscaler(name: str, provider: k8s.Provider, region: str, chart_version: str,
                              oidc_provider_arn: pulumi.Output[str], oidc_provider_url: pulumi.Output[str],
                              tags: Dict[str, str] = None,
                              depends_on: List[pulumi.Resource] = None) -> Dict[str, Any]:
    """
    Deploy Cluster Autoscaler with an IRSA role

    Args:
        name: Cluster name
        provider: Kubernetes provider
        region: AWS region
        chart_version: cluster-autoscaler chart version
        oidc_provider_arn: Cluster OIDC provider ARN
        oidc_provider_url: Cluster OIDC provider URL
        tags: Additional tags for the IAM resources
        depends_on: Resources the release waits for, such as the node group

    Returns:
        Dict with the Helm release and the IAM role
    """
    role_result = create_irsa_role(
        f"{name}-cluster-autoscaler",
        oidc_provider_arn,
        oidc_provider_url,
        CLUSTER_AUTOSCALER_NAMESPACE,
        CLUSTER_AUTOSCALER_SERVICE_ACCOUNT,
        cluster_autoscaler_policy(name),
        tags
    )

    release = k8s.helm.v3.Release(
        f"{name}-cluster-autoscaler",
        repository_opts=k8s.helm.v3.RepositoryOptsArgs(
            repo=CLUSTER_AUTOSCALER_REPO
        ),
        chart="cluster-autoscaler",
        version=chart_version,
        name="cluster-autoscaler",
        namespace=CLUSTER_AUTOSCALER_NAMESPACE,
        values={
            "cloudProvider": "aws",
            "awsRegion": region,
            "autoDiscovery": {
                "clusterName": name
            },
            "rbac": {
                "serviceAccount": {
                    "create": True,
                    "name": CLUSTER_AUTOSCALER_SERVICE_ACCOUNT,
                    "annotations": {
                        "eks.amazonaws.com/role-arn": role_result["role_arn"]
                    }
                }
            },
            "extraArgs": {
                "balance-similar-node-groups": True,
                "skip-nodes-with-system-pods": False,
                "expander": "least-waste"
            }
        },
        opts=pulumi.ResourceOptions(
            provider=provider,
            depends_on=[role_result["attachment"], *(depends_on or [])]
        )
    )

    return {
        "cluster_autoscaler": release,
        "role": role_result["role"],
        "role_arn": role_result["role_arn"],
        "status": "enabled"
    }


def create_addons_resources(cluster_name: str,
                            cluster_endpoint: pulumi.Output[str],
                            cluster_ca_data: pulumi.Output[str],
                            region: str,
                            oidc_provider_arn: pulumi.Output[str],
                            oidc_provider_url: pulumi.Output[str],
                            enable_metrics_server: bool = True,
                            enable_cluster_autoscaler: bool = True,
                            metrics_server_chart_version: str = "3.12.1",
                            cluster_autoscaler_chart_version: str = "9.37.0",
                            tags: Dict[str, str] = None,
                            depends_on: List[pulumi.Resource] = None) -> Dict[str, Any]:
    """
    Create Kubernetes addons for EKS cluster

    Args:
        cluster_name: EKS cluster name
        cluster_endpoint: EKS cluster endpoint, resolved once access has propagated
        cluster_ca_data: EKS cluster CA certificate data
        region: AWS region
        oidc_provider_arn: Cluster OIDC provider ARN
        oidc_provider_url: Cluster OIDC provider URL
        enable_metrics_server: Deploy metrics server
        enable_cluster_autoscaler: Deploy Cluster Autoscaler
        metrics_server_chart_version: metrics-server chart version
        cluster_autoscaler_chart_version: cluster-autoscaler chart version
        tags: Additional tags
        depends_on: Resources every Helm release waits for, such as the
            node group and CoreDNS, so chart pods have somewhere to run

    Returns:
        Dict with all addon resources and status
    """
    tags = tags or {}

    k8s_provider = create_kubernetes_provider(cluster_name, cluster_endpoint, cluster_ca_data, region)

    addons_status = {}

    metrics_server_result: Optional[Dict[str, Any]] = None
    if enable_metrics_server:
        metrics_server_result = deploy_metrics_server(
            cluster_name, k8s_provider, metrics_server_chart_version, depends_on
        )
        addons_status["metrics_server"] = metrics_server_result["status"]
    else:
        pulumi.log.warn("metrics-server disabled; Horizontal Pod Autoscalers will have no resource metrics")
        addons_status["metrics_server"] = "disabled"

    autoscaler_result: Optional[Dict[str, Any]] = None
    if enable_cluster_autoscaler:
        autoscaler_result = deploy_cluster_autoscaler(
            cluster_name,
            k8s_provider,
            region,
            cluster_autoscaler_chart_version,
            oidc_provider_arn,
            oidc_provider_url,
            tags,
            depends_on
        )
        addons_status["cluster_autoscaler"] = autoscaler_result["status"]
    else:
        pulumi.log.warn("Cluster Autoscaler disabled; node group stays at its desired size")
        addons_status["cluster_autoscaler"] = "disabled"

    return {
        "metrics_server_status": addons_status["metrics_server"],
        "cluster_autoscaler_status": addons_status["cluster_autoscaler"],
        "cluster_autoscaler_role_arn": autoscaler_result["role_arn"] if autoscaler_result else None,
        "installed": [addon for addon, status in addons_status.items() if status == "enabled"],
        # Keep references to resources for dependencies
        "_k8s_provider": k8s_provider,
        "_metrics_server": metrics_server_result["metrics_server"] if metrics_server_result else None,
        "_cluster_autoscaler": autoscaler_result["cluster_autoscaler"] if autoscaler_result else None
    }
