"""
Unit tests for the Pulumi module functions
Provider modules (aws, k8s, tls) and the pulumi SDK are patched per module,
so these tests check the declared resource graph without touching AWS
"""

import asyncio
import json
import time
import unittest
from unittest.mock import AsyncMock, MagicMock, Mock, patch
import sys
import os

# Add the project root to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from eks_streaming.vpc.functions import create_vpc_resources
from eks_streaming.iam.functions import (
    create_iam_resources,
    create_irsa_role,
    create_oidc_provider,
    irsa_trust_policy,
)
from eks_streaming.eks.functions import (
    CLUSTER_ADMIN_POLICY_ARN,
    autoscaler_discovery_tags,
    create_eks_resources,
    pause_for_propagation,
    wait_for_access_propagation,
)
from eks_streaming.addons.functions import (
    cluster_autoscaler_policy,
    create_addons_resources,
    render_kubeconfig,
)
from eks_streaming.kafka.functions import (
    SASL_SCRAM_PORT,
    configuration_name,
    create_kafka_resources,
    render_scram_secret,
    secret_resource_policy,
    server_properties,
)

ZONES = ["us-west-2a", "us-west-2b", "us-west-2c"]
PRIVATE = ["10.0.1.0/24", "10.0.2.0/24", "10.0.3.0/24"]
PUBLIC = ["10.0.101.0/24", "10.0.102.0/24", "10.0.103.0/24"]


def named_mock(name, **kwargs):
    """Resource mock whose attributes are derived from its logical name"""
    return Mock(id=f"{name}-id", arn=f"arn:{name}", **kwargs)


def calls_by_name(resource_mock):
    return {c.args[0]: c.kwargs for c in resource_mock.call_args_list}


class TestVpcFunctions(unittest.TestCase):

    def build(self, single_nat_gateway=True):
        with patch('eks_streaming.vpc.functions.aws') as mock_aws, \
                patch('eks_streaming.vpc.functions.pulumi'):
            mock_aws.ec2.Vpc.return_value = Mock(id="vpc-12345", cidr_block="10.0.0.0/16")
            mock_aws.ec2.InternetGateway.return_value = Mock(id="igw-12345")
            mock_aws.ec2.Subnet.side_effect = lambda name, **kwargs: named_mock(name)
            mock_aws.ec2.RouteTable.side_effect = lambda name, **kwargs: named_mock(name)
            mock_aws.ec2.Eip.side_effect = lambda name, **kwargs: named_mock(name)
            mock_aws.ec2.NatGateway.side_effect = lambda name, **kwargs: named_mock(name)
            mock_aws.ec2.SecurityGroup.return_value = Mock(id="sg-12345")

            result = create_vpc_resources(
                cluster_name="test-cluster",
                vpc_cidr="10.0.0.0/16",
                availability_zones=ZONES,
                private_subnet_cidrs=PRIVATE,
                public_subnet_cidrs=PUBLIC,
                single_nat_gateway=single_nat_gateway
            )
            return result, mock_aws

    def test_vpc_function_structure(self):
        result, _ = self.build()

        for key in ("vpc_id", "vpc_cidr_block", "private_subnet_ids", "public_subnet_ids",
                    "availability_zones", "cluster_security_group_id", "nat_gateway_ids"):
            self.assertIn(key, result)
        self.assertEqual(result["vpc_id"], "vpc-12345")
        self.assertEqual(len(result["private_subnet_ids"]), 3)
        self.assertEqual(len(result["public_subnet_ids"]), 3)

    def test_subnets_carry_load_balancer_role_tags(self):
        _, mock_aws = self.build()
        subnets = calls_by_name(mock_aws.ec2.Subnet)

        public = subnets["test-cluster-public-subnet-1"]
        self.assertEqual(public["tags"]["kubernetes.io/role/elb"], "1")
        self.assertTrue(public["map_public_ip_on_launch"])

        private = subnets["test-cluster-private-subnet-2"]
        self.assertEqual(private["tags"]["kubernetes.io/role/internal-elb"], "1")
        self.assertFalse(private["map_public_ip_on_launch"])
        self.assertEqual(private["availability_zone"], "us-west-2b")
        self.assertEqual(private["cidr_block"], "10.0.2.0/24")

    def test_single_nat_gateway_shared_by_private_subnets(self):
        result, mock_aws = self.build(single_nat_gateway=True)

        self.assertEqual(mock_aws.ec2.NatGateway.call_count, 1)
        private_routes = [c.kwargs for c in mock_aws.ec2.Route.call_args_list if "nat_gateway_id" in c.kwargs]
        self.assertEqual(len(private_routes), 3)
        self.assertEqual({r["nat_gateway_id"] for r in private_routes}, {"test-cluster-nat-1-id"})

    def test_nat_gateway_per_zone(self):
        result, mock_aws = self.build(single_nat_gateway=False)

        self.assertEqual(mock_aws.ec2.NatGateway.call_count, 3)
        private_routes = [c.kwargs for c in mock_aws.ec2.Route.call_args_list if "nat_gateway_id" in c.kwargs]
        self.assertEqual(
            [r["nat_gateway_id"] for r in private_routes],
            ["test-cluster-nat-1-id", "test-cluster-nat-2-id", "test-cluster-nat-3-id"]
        )

    def test_resource_names_are_deterministic(self):
        _, first = self.build()
        _, second = self.build()
        self.assertEqual(
            [c.args[0] for c in first.ec2.Subnet.call_args_list],
            [c.args[0] for c in second.ec2.Subnet.call_args_list]
        )


class TestIamFunctions(unittest.TestCase):

    def test_iam_function_structure(self):
        with patch('eks_streaming.iam.functions.aws') as mock_aws:
            mock_role = Mock()
            mock_role.arn = "arn:aws:iam::123456789012:role/test-role"
            mock_role.name = "test-role"
            mock_aws.iam.Role.return_value = mock_role
            mock_aws.iam.RolePolicyAttachment.return_value = Mock()

            result = create_iam_resources(cluster_name="test-cluster")

            self.assertIn("cluster_role_arn", result)
            self.assertIn("cluster_role_name", result)
            self.assertIn("node_group_role_arn", result)
            self.assertIn("node_group_role_name", result)
            self.assertEqual(mock_aws.iam.Role.call_count, 2)
            # cluster policy + four node policies
            self.assertEqual(mock_aws.iam.RolePolicyAttachment.call_count, 5)

    def test_irsa_trust_policy_binds_one_service_account(self):
        policy = json.loads(irsa_trust_policy(
            "arn:aws:iam::123456789012:oidc-provider/oidc.eks.us-west-2.amazonaws.com/id/ABC",
            "https://oidc.eks.us-west-2.amazonaws.com/id/ABC",
            "kube-system",
            "cluster-autoscaler"
        ))
        statement = policy["Statement"][0]
        conditions = statement["Condition"]["StringEquals"]

        self.assertEqual(statement["Action"], "sts:AssumeRoleWithWebIdentity")
        self.assertEqual(
            conditions["oidc.eks.us-west-2.amazonaws.com/id/ABC:sub"],
            "system:serviceaccount:kube-system:cluster-autoscaler"
        )
        self.assertEqual(conditions["oidc.eks.us-west-2.amazonaws.com/id/ABC:aud"], "sts.amazonaws.com")

    def test_oidc_provider_uses_cluster_issuer(self):
        with patch('eks_streaming.iam.functions.aws') as mock_aws, \
                patch('eks_streaming.iam.functions.tls') as mock_tls, \
                patch('eks_streaming.iam.functions.pulumi'):
            cluster = MagicMock()
            mock_aws.iam.OpenIdConnectProvider.return_value = Mock(arn="arn:oidc", url="oidc.example")

            result = create_oidc_provider("test-cluster", cluster)

            issuer = cluster.identities[0].oidcs[0].issuer
            mock_tls.get_certificate_output.assert_called_once_with(url=issuer)
            kwargs = mock_aws.iam.OpenIdConnectProvider.call_args.kwargs
            self.assertEqual(kwargs["url"], issuer)
            self.assertEqual(kwargs["client_id_lists"], ["sts.amazonaws.com"])
            self.assertEqual(result["oidc_provider_arn"], "arn:oidc")

    def test_irsa_role_attaches_policy_document(self):
        document = {"Version": "2012-10-17", "Statement": []}
        with patch('eks_streaming.iam.functions.aws') as mock_aws, \
                patch('eks_streaming.iam.functions.pulumi') as mock_pulumi:
            mock_aws.iam.Policy.return_value = Mock(arn="arn:policy")

            result = create_irsa_role("test-ca", "arn:oidc", "oidc.example", "kube-system", "sa", document)

            self.assertEqual(json.loads(mock_aws.iam.Policy.call_args.kwargs["policy"]), document)
            mock_aws.iam.RolePolicyAttachment.assert_called_once()
            self.assertEqual(mock_aws.iam.RolePolicyAttachment.call_args.kwargs["policy_arn"], "arn:policy")

            # trust policy is rendered from the provider outputs
            render = mock_pulumi.Output.all.return_value.apply.call_args.args[0]
            trust = json.loads(render(["arn:oidc", "https://oidc.example"]))
            self.assertIn("oidc.example:sub", trust["Statement"][0]["Condition"]["StringEquals"])
            self.assertIn("role_arn", result)


class TestEksFunctions(unittest.TestCase):

    def build(self):
        with patch('eks_streaming.eks.functions.aws') as mock_aws, \
                patch('eks_streaming.eks.functions.pulumi') as mock_pulumi:
            mock_aws.eks.Cluster.return_value = Mock(name="cluster")
            mock_aws.eks.NodeGroup.return_value = Mock(name="node_group")

            result = create_eks_resources(
                cluster_name="test-cluster",
                cluster_version="1.30",
                cluster_role_arn="arn:cluster-role",
                node_group_role_arn="arn:node-role",
                cluster_subnet_ids=["subnet-1", "subnet-2"],
                node_subnet_ids=["subnet-1"],
                cluster_security_group_id="sg-12345",
                node_instance_types=["t3.medium"],
                node_desired_size=2,
                node_max_size=4,
                node_min_size=1,
                node_disk_size=20,
                admin_principal_arn="arn:aws:iam::123456789012:role/admin",
                access_propagation_seconds=45
            )
            return result, mock_aws, mock_pulumi

    def test_eks_function_structure(self):
        result, _, _ = self.build()
        for key in ("cluster_name", "cluster_endpoint", "cluster_certificate_authority_data",
                    "ready_endpoint", "node_group_name", "node_group_arn", "node_group_status"):
            self.assertIn(key, result)

    def test_node_group_scaling_and_discovery_tags(self):
        _, mock_aws, _ = self.build()

        mock_aws.eks.NodeGroupScalingConfigArgs.assert_called_once_with(
            desired_size=2, max_size=4, min_size=1
        )
        kwargs = mock_aws.eks.NodeGroup.call_args.kwargs
        self.assertEqual(kwargs["subnet_ids"], ["subnet-1"])
        for key, value in autoscaler_discovery_tags("test-cluster").items():
            self.assertEqual(kwargs["tags"][key], value)

    def test_cluster_uses_access_entries_and_kms(self):
        _, mock_aws, _ = self.build()

        mock_aws.eks.ClusterAccessConfigArgs.assert_called_once_with(
            authentication_mode="API_AND_CONFIG_MAP",
            bootstrap_cluster_creator_admin_permissions=False
        )
        self.assertEqual(
            mock_aws.eks.ClusterEncryptionConfigProviderArgs.call_args.kwargs["key_arn"],
            mock_aws.kms.Key.return_value.arn
        )

    def test_admin_granted_cluster_admin_policy(self):
        _, mock_aws, _ = self.build()

        entry = mock_aws.eks.AccessEntry.call_args.kwargs
        self.assertEqual(entry["principal_arn"], "arn:aws:iam::123456789012:role/admin")
        association = mock_aws.eks.AccessPolicyAssociation.call_args.kwargs
        self.assertEqual(association["policy_arn"], CLUSTER_ADMIN_POLICY_ARN)
        mock_aws.eks.AccessPolicyAssociationAccessScopeArgs.assert_called_once_with(type="cluster")

    def test_managed_addons(self):
        _, mock_aws, _ = self.build()
        addon_names = [c.kwargs["addon_name"] for c in mock_aws.eks.Addon.call_args_list]
        self.assertEqual(addon_names, ["vpc-cni", "coredns", "kube-proxy"])

    def test_ready_endpoint_waits_on_admin_association(self):
        result, mock_aws, mock_pulumi = self.build()

        association = mock_aws.eks.AccessPolicyAssociation.return_value
        cluster = mock_aws.eks.Cluster.return_value
        mock_pulumi.Output.all.assert_called_once_with(association.id, cluster.endpoint)
        self.assertIs(result["ready_endpoint"], mock_pulumi.Output.all.return_value.apply.return_value)


class TestAccessPropagation(unittest.TestCase):

    def pause(self, seconds, dry_run=False):
        with patch('eks_streaming.eks.functions.asyncio') as mock_asyncio, \
                patch('eks_streaming.eks.functions.pulumi') as mock_pulumi:
            mock_pulumi.runtime.is_dry_run.return_value = dry_run
            mock_asyncio.sleep = AsyncMock()
            value = asyncio.run(pause_for_propagation(seconds, "https://endpoint"))
        return value, mock_asyncio.sleep

    def test_pause_sleeps_during_update(self):
        value, mock_sleep = self.pause(30)

        self.assertEqual(value, "https://endpoint")
        mock_sleep.assert_awaited_once_with(30)

    def test_pause_skipped_during_preview(self):
        value, mock_sleep = self.pause(30, dry_run=True)

        self.assertEqual(value, "https://endpoint")
        mock_sleep.assert_not_awaited()

    def test_zero_delay_does_not_sleep(self):
        _, mock_sleep = self.pause(0)
        mock_sleep.assert_not_awaited()

    def test_pause_does_not_block_event_loop(self):
        ticks = []

        async def ticker():
            for _ in range(5):
                ticks.append(time.monotonic())
                await asyncio.sleep(0.01)

        async def run_both():
            await asyncio.gather(pause_for_propagation(0.2, "https://endpoint"), ticker())
            return time.monotonic()

        with patch('eks_streaming.eks.functions.pulumi') as mock_pulumi:
            mock_pulumi.runtime.is_dry_run.return_value = False
            finished = asyncio.run(run_both())

        self.assertEqual(len(ticks), 5)
        self.assertLess(ticks[-1], finished - 0.1)

    def test_wait_resolves_to_endpoint(self):
        with patch('eks_streaming.eks.functions.asyncio') as mock_asyncio, \
                patch('eks_streaming.eks.functions.pulumi') as mock_pulumi:
            mock_pulumi.runtime.is_dry_run.return_value = False
            mock_asyncio.sleep = AsyncMock()
            association = Mock(id="assoc-1")

            wait_for_access_propagation(association, "endpoint-output", seconds=10)

            resolve = mock_pulumi.Output.all.return_value.apply.call_args.args[0]
            self.assertEqual(asyncio.run(resolve(["assoc-1", "https://endpoint"])), "https://endpoint")
            mock_asyncio.sleep.assert_awaited_once_with(10)


class TestAddonsFunctions(unittest.TestCase):

    def build(self, **flags):
        with patch('eks_streaming.addons.functions.k8s') as mock_k8s, \
                patch('eks_streaming.addons.functions.pulumi') as mock_pulumi, \
                patch('eks_streaming.iam.functions.aws') as mock_aws, \
                patch('eks_streaming.iam.functions.pulumi'):
            mock_pulumi.ResourceOptions.side_effect = lambda **kwargs: kwargs
            mock_aws.iam.Role.return_value = Mock(arn="arn:ca-role")

            result = create_addons_resources(
                cluster_name="test-cluster",
                cluster_endpoint="endpoint-output",
                cluster_ca_data="ca-output",
                region="us-west-2",
                oidc_provider_arn="arn:oidc",
                oidc_provider_url="oidc.example",
                **flags
            )
            releases = {c.kwargs["chart"]: c.kwargs for c in mock_k8s.helm.v3.Release.call_args_list}
            return result, releases, mock_aws

    def test_kubeconfig_uses_aws_token_exec(self):
        kubeconfig = render_kubeconfig("https://ABC.eks.amazonaws.com", "Q0FEQVRB", "test-cluster", "us-west-2")

        self.assertIn("server: https://ABC.eks.amazonaws.com", kubeconfig)
        self.assertIn("certificate-authority-data: Q0FEQVRB", kubeconfig)
        self.assertIn("current-context: test-cluster", kubeconfig)
        self.assertIn("- get-token", kubeconfig)
        self.assertIn("- us-west-2", kubeconfig)

    def test_autoscaler_policy_scoped_to_cluster(self):
        policy = cluster_autoscaler_policy("test-cluster")
        mutate = policy["Statement"][1]

        self.assertIn("autoscaling:SetDesiredCapacity", mutate["Action"])
        self.assertEqual(
            mutate["Condition"]["StringEquals"]["aws:ResourceTag/k8s.io/cluster-autoscaler/test-cluster"],
            "owned"
        )

    def test_both_addons_installed(self):
        result, releases, mock_aws = self.build()

        self.assertEqual(set(releases), {"metrics-server", "cluster-autoscaler"})
        values = releases["cluster-autoscaler"]["values"]
        self.assertEqual(values["autoDiscovery"]["clusterName"], "test-cluster")
        self.assertEqual(values["awsRegion"], "us-west-2")
        self.assertEqual(
            values["rbac"]["serviceAccount"]["annotations"]["eks.amazonaws.com/role-arn"],
            "arn:ca-role"
        )
        self.assertEqual(releases["metrics-server"]["namespace"], "kube-system")
        self.assertEqual(result["installed"], ["metrics_server", "cluster_autoscaler"])
        self.assertEqual(result["cluster_autoscaler_role_arn"], "arn:ca-role")

    def test_addons_can_be_disabled(self):
        result, releases, mock_aws = self.build(enable_metrics_server=False, enable_cluster_autoscaler=False)

        self.assertEqual(releases, {})
        mock_aws.iam.Role.assert_not_called()
        self.assertEqual(result["installed"], [])
        self.assertIsNone(result["cluster_autoscaler_role_arn"])
        self.assertEqual(result["metrics_server_status"], "disabled")

    def test_releases_wait_for_node_group_and_coredns(self):
        node_group, coredns = Mock(name="node-group"), Mock(name="coredns")
        result, releases, mock_aws = self.build(depends_on=[node_group, coredns])

        for chart, release in releases.items():
            with self.subTest(chart=chart):
                self.assertIn(node_group, release["opts"]["depends_on"])
                self.assertIn(coredns, release["opts"]["depends_on"])
        self.assertIn(mock_aws.iam.RolePolicyAttachment.return_value,
                      releases["cluster-autoscaler"]["opts"]["depends_on"])


class TestKafkaFunctions(unittest.TestCase):

    def build(self, existing_kms_key_arn=""):
        with patch('eks_streaming.kafka.functions.aws') as mock_aws, \
                patch('eks_streaming.kafka.functions.pulumi') as mock_pulumi:
            mock_aws.kms.Key.side_effect = lambda name, **kwargs: named_mock(name)
            mock_pulumi.Output.from_input.side_effect = lambda value: value

            result = create_kafka_resources(
                cluster_name="test-cluster",
                vpc_id="vpc-12345",
                vpc_cidr="10.0.0.0/16",
                client_subnet_ids=["subnet-1", "subnet-2", "subnet-3"],
                kafka_version="3.6.0",
                broker_count=3,
                instance_type="kafka.t3.small",
                volume_size=100,
                username="kafka-admin",
                password="password-output",
                secret_name="AmazonMSK_test-cluster-scram",
                existing_kms_key_arn=existing_kms_key_arn
            )
            return result, mock_aws, mock_pulumi

    def test_scram_secret_document(self):
        self.assertEqual(
            json.loads(render_scram_secret("kafka-admin", "p@ss")),
            {"username": "kafka-admin", "password": "p@ss"}
        )

    def test_secret_policy_allows_msk(self):
        statement = json.loads(secret_resource_policy("arn:secret"))["Statement"][0]
        self.assertEqual(statement["Principal"], {"Service": "kafka.amazonaws.com"})
        self.assertEqual(statement["Resource"], "arn:secret")

    def test_server_properties_follow_broker_count(self):
        self.assertIn("default.replication.factor=3", server_properties(3))
        self.assertIn("min.insync.replicas=2", server_properties(6))
        single = server_properties(1)
        self.assertIn("default.replication.factor=1", single)
        self.assertIn("min.insync.replicas=1", single)
        self.assertIn("auto.create.topics.enable=false", single)

    def test_configuration_name_tracks_kafka_version(self):
        _, mock_aws, _ = self.build()
        configuration = mock_aws.msk.Configuration.call_args.kwargs

        self.assertEqual(configuration["name"], "test-cluster-msk-configuration-3-6-0")
        self.assertEqual(configuration["kafka_versions"], ["3.6.0"])
        self.assertNotEqual(configuration_name("test-cluster", "3.6.0"),
                            configuration_name("test-cluster", "3.7.x"))

    def test_kafka_function_structure(self):
        result, _, _ = self.build()
        for key in ("cluster_arn", "bootstrap_brokers_sasl_scram", "secret_arn", "security_group_id"):
            self.assertIn(key, result)

    def test_scram_listener_port(self):
        _, mock_aws, _ = self.build()
        ingress = mock_aws.ec2.SecurityGroupIngressArgs.call_args.kwargs

        self.assertEqual(SASL_SCRAM_PORT, 9096)
        self.assertEqual((ingress["from_port"], ingress["to_port"]), (9096, 9096))
        self.assertEqual(ingress["cidr_blocks"], ["10.0.0.0/16"])

    def test_cluster_uses_scram_over_tls(self):
        _, mock_aws, _ = self.build()

        mock_aws.msk.ClusterClientAuthenticationSaslArgs.assert_called_once_with(scram=True)
        mock_aws.msk.ClusterEncryptionInfoEncryptionInTransitArgs.assert_called_once_with(
            client_broker="TLS", in_cluster=True
        )
        cluster = mock_aws.msk.Cluster.call_args.kwargs
        self.assertEqual(cluster["number_of_broker_nodes"], 3)
        mock_aws.msk.ClusterBrokerNodeGroupInfoStorageInfoEbsStorageInfoArgs.assert_called_once_with(volume_size=100)

    def test_storage_and_secret_use_dedicated_customer_keys(self):
        _, mock_aws, _ = self.build()

        encryption = mock_aws.msk.ClusterEncryptionInfoArgs.call_args.kwargs
        self.assertEqual(encryption["encryption_at_rest_kms_key_arn"], "arn:test-cluster-msk-storage-key")
        secret = mock_aws.secretsmanager.Secret.call_args.kwargs
        self.assertEqual(secret["kms_key_id"], "arn:test-cluster-msk-secret-key")
        self.assertEqual(secret["name"], "AmazonMSK_test-cluster-scram")

    def test_existing_storage_key_is_used(self):
        arn = "arn:aws:kms:us-west-2:123456789012:key/1234abcd-12ab-34cd-56ef-1234567890ab"
        result, mock_aws, _ = self.build(existing_kms_key_arn=arn)

        self.assertEqual(mock_aws.kms.Key.call_count, 1)
        encryption = mock_aws.msk.ClusterEncryptionInfoArgs.call_args.kwargs
        self.assertEqual(encryption["encryption_at_rest_kms_key_arn"], arn)
        self.assertEqual(result["storage_kms_key_arn"], arn)

    def test_secret_version_holds_credentials(self):
        _, mock_aws, mock_pulumi = self.build()

        mock_pulumi.Output.secret.assert_called_once_with("password-output")
        render = mock_pulumi.Output.secret.return_value.apply.call_args.args[0]
        self.assertEqual(json.loads(render("p@ss")), {"username": "kafka-admin", "password": "p@ss"})

    def test_secret_associated_with_cluster(self):
        _, mock_aws, _ = self.build()

        association = mock_aws.msk.ScramSecretAssociation.call_args.kwargs
        self.assertEqual(association["cluster_arn"], mock_aws.msk.Cluster.return_value.arn)
        self.assertEqual(association["secret_arn_lists"], [mock_aws.secretsmanager.Secret.return_value.arn])


if __name__ == "__main__":
    unittest.main(verbosity=2)
