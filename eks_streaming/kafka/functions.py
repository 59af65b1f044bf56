"""
Kafka Module Functions
Amazon MSK cluster with SASL/SCRAM over TLS, the customer-managed KMS keys
it needs, and the Secrets Manager credential it authenticates clients with
"""

import json
import pulumi
import pulumi_aws as aws
from typing import Any, Dict, List

SASL_SCRAM_PORT = 9096


def render_scram_secret(username: str, password: str) -> str:
    """Credential document MSK reads from Secrets Manager"""
    return json.dumps({"username": username, "password": password})


def secret_resource_policy(secret_arn: str) -> str:
    """Resource policy letting MSK read the SCRAM secret"""
    return json.dumps({
        "Version": "2012-10-17",
        "Statement": [{
            "Sid": "AWSKafkaResourcePolicy",
            "Effect": "Allow",
            "Principal": {"Service": "kafka.amazonaws.com"},
            "Action": "secretsmanager:GetSecretValue",
            "Resource": secret_arn
        }]
    })


def server_properties(broker_count: int) -> str:
    """
    Broker configuration

    Replication settings never exceed the broker count, so a single-broker
    development cluster stays writable.
    """
    replication = min(3, broker_count)
    min_insync = max(1, replication - 1)
    properties = {
        "auto.create.topics.enable": "false",
        "default.replication.factor": str(replication),
        "min.insync.replicas": str(min_insync),
        "num.partitions": "3",
        "allow.everyone.if.no.acl.found": "false",
        "unclean.leader.election.enable": "false"
    }
    return "\n".join(f"{key}={value}" for key, value in properties.items()) + "\n"


def create_kafka_security_group(name: str, vpc_id: pulumi.Output[str], client_cidrs: List[str],
                                tags: Dict[str, str] = None) -> Dict[str, Any]:
    """
    Create security group for the brokers

    Args:
        name: Resource name prefix
        vpc_id: VPC ID
        client_cidrs: CIDRs allowed to reach the SASL/SCRAM listener
        tags: Additional tags

    Returns:
        Dict with security group resource and outputs
    """
    tags = tags or {}

    security_group = aws.ec2.SecurityGroup(
        f"{name}-msk-sg",
        name_prefix=f"{name}-msk-",
        vpc_id=vpc_id,
        description="MSK brokers: SASL/SCRAM over TLS",
        ingress=[
            aws.ec2.SecurityGroupIngressArgs(
                protocol="tcp",
                from_port=SASL_SCRAM_PORT,
                to_port=SASL_SCRAM_PORT,
                cidr_blocks=client_cidrs,
                description="SASL/SCRAM TLS from the VPC"
            )
        ],
        egress=[
            aws.ec2.SecurityGroupEgressArgs(
                protocol="-1",
                from_port=0,
                to_port=0,
                cidr_blocks=["0.0.0.0/0"],
                description="Allow all outbound"
            )
        ],
        tags={
            **tags,
            "Name": f"{name}-msk-sg",
            "Module": "kafka"
        }
    )

    return {
        "security_group": security_group,
        "security_group_id": security_group.id
    }


def create_kafka_kms_key(name: str, purpose: str, tags: Dict[str, str] = None) -> Dict[str, Any]:
    """
    Create a customer-managed KMS key for Kafka

    Args:
        name: Resource name prefix
        purpose: Short purpose, e.g. "storage" or "secret"
        tags: Additional tags

    Returns:
        Dict with key, alias and key ARN
    """
    tags = tags or {}

    kms_key = aws.kms.Key(
        f"{name}-msk-{purpose}-key",
        description=f"MSK {purpose} encryption key for {name}",
        key_usage="ENCRYPT_DECRYPT",
        enable_key_rotation=True,
        tags={
            **tags,
            "Name": f"{name}-msk-{purpose}-key",
            "Module": "kafka"
        }
    )

    kms_alias = aws.kms.Alias(
        f"{name}-msk-{purpose}-alias",
        name=f"alias/{name}-msk-{purpose}",
        target_key_id=kms_key.key_id
    )

    return {
        "kms_key": kms_key,
        "kms_alias": kms_alias,
        "kms_key_arn": kms_key.arn
    }


def create_scram_secret(name: str, secret_name: str, username: str, password: pulumi.Output[str],
                        kms_key_arn: pulumi.Output[str], tags: Dict[str, str] = None) -> Dict[str, Any]:
    """
    Store the SASL/SCRAM credential in Secrets Manager

    Args:
        name: Resource name prefix
        secret_name: Secret name, must start with AmazonMSK_
        username: SCRAM username
        password: SCRAM password (Pulumi secret)
        kms_key_arn: Customer-managed key the secret is encrypted with
        tags: Additional tags

    Returns:
        Dict with secret resources and the secret ARN
    """
    tags = tags or {}

    secret = aws.secretsmanager.Secret(
        f"{name}-msk-scram-secret",
        name=secret_name,
        description=f"SASL/SCRAM credentials for MSK cluster {name}",
        kms_key_id=kms_key_arn,
        recovery_window_in_days=0,
        tags={
            **tags,
            "Name": secret_name,
            "Module": "kafka"
        }
    )

    secret_version = aws.secretsmanager.SecretVersion(
        f"{name}-msk-scram-secret-version",
        secret_id=secret.id,
        secret_string=pulumi.Output.secret(password).apply(
            lambda value: render_scram_secret(username, value)
        )
    )

    secret_policy = aws.secretsmanager.SecretPolicy(
        f"{name}-msk-scram-secret-policy",
        secret_arn=secret.arn,
        policy=secret.arn.apply(secret_resource_policy)
    )

    return {
        "secret": secret,
        "secret_version": secret_version,
        "secret_policy": secret_policy,
        "secret_arn": secret.arn
    }


def create_broker_log_group(name: str, retention_days: int = 30, tags: Dict[str, str] = None) -> Dict[str, Any]:
    tags = tags or {}

    log_group = aws.cloudwatch.LogGroup(
        f"{name}-msk-log-group",
        name=f"/aws/msk/{name}/broker",
        retention_in_days=retention_days,
        tags={
            **tags,
            "Name": f"{name}-msk-log-group",
            "Module": "kafka"
        }
    )

    return {
        "log_group": log_group,
        "log_group_name": log_group.name
    }


def configuration_name(name: str, kafka_version: str) -> str:
    """MSK configuration name; a new Kafka version gets a new name so replacement never collides"""
    return f"{name}-msk-configuration-{kafka_version.replace('.', '-')}"


def create_kafka_configuration(name: str, kafka_version: str, broker_count: int) -> Dict[str, Any]:
    configuration = aws.msk.Configuration(
        f"{name}-msk-configuration",
        name=configuration_name(name, kafka_version),
        kafka_versions=[kafka_version],
        server_properties=server_properties(broker_count)
    )

    return {
        "configuration": configuration,
        "configuration_arn": configuration.arn,
        "configuration_revision": configuration.latest_revision
    }


def create_kafka_cluster(name: str, kafka_version: str, broker_count: int, instance_type: str,
                         volume_size: int, client_subnet_ids: List[pulumi.Output[str]],
                         security_group_id: pulumi.Output[str], kms_key_arn: pulumi.Output[str],
                         configuration_arn: pulumi.Output[str], configuration_revision: pulumi.Output[int],
                         log_group_name: pulumi.Output[str],
                         tags: Dict[str, str] = None) -> Dict[str, Any]:
    """
    Create the MSK cluster

    Args:
        name: Resource name prefix
        kafka_version: Apache Kafka version
        broker_count: Number of broker nodes, a multiple of the subnet count
        instance_type: Broker instance type
        volume_size: EBS volume size per broker in GiB
        client_subnet_ids: Private subnets the brokers are spread over
        security_group_id: Broker security group ID
        kms_key_arn: Customer-managed encryption-at-rest key
        configuration_arn: MSK configuration ARN
        configuration_revision: MSK configuration revision
        log_group_name: CloudWatch log group for broker logs
        tags: Additional tags

    Returns:
        Dict with cluster resource and outputs
    """
    tags = tags or {}

    cluster = aws.msk.Cluster(
        f"{name}-msk",
        cluster_name=f"{name}-msk",
        kafka_version=kafka_version,
        number_of_broker_nodes=broker_count,
        broker_node_group_info=aws.msk.ClusterBrokerNodeGroupInfoArgs(
            instance_type=instance_type,
            client_subnets=client_subnet_ids,
            security_groups=[security_group_id],
            storage_info=aws.msk.ClusterBrokerNodeGroupInfoStorageInfoArgs(
                ebs_storage_info=aws.msk.ClusterBrokerNodeGroupInfoStorageInfoEbsStorageInfoArgs(
                    volume_size=volume_size
                )
            )
        ),
        client_authentication=aws.msk.ClusterClientAuthenticationArgs(
            sasl=aws.msk.ClusterClientAuthenticationSaslArgs(
                scram=True
            ),
            unauthenticated=False
        ),
        encryption_info=aws.msk.ClusterEncryptionInfoArgs(
            encryption_at_rest_kms_key_arn=kms_key_arn,
            encryption_in_transit=aws.msk.ClusterEncryptionInfoEncryptionInTransitArgs(
                client_broker="TLS",
                in_cluster=True
            )
        ),
        configuration_info=aws.msk.ClusterConfigurationInfoArgs(
            arn=configuration_arn,
            revision=configuration_revision
        ),
        logging_info=aws.msk.ClusterLoggingInfoArgs(
            broker_logs=aws.msk.ClusterLoggingInfoBrokerLogsArgs(
                cloudwatch_logs=aws.msk.ClusterLoggingInfoBrokerLogsCloudwatchLogsArgs(
                    enabled=True,
                    log_group=log_group_name
                )
            )
        ),
        tags={
            **tags,
            "Name": f"{name}-msk",
            "Module": "kafka"
        }
    )

    return {
        "cluster": cluster,
        "cluster_arn": cluster.arn,
        "bootstrap_brokers_sasl_scram": cluster.bootstrap_brokers_sasl_scram
    }


def associate_scram_secret(name: str, cluster_arn: pulumi.Output[str], secret_arn: pulumi.Output[str],
                           depends_on: List[Any] = None) -> Dict[str, Any]:
    association = aws.msk.ScramSecretAssociation(
        f"{name}-msk-scram-association",
        cluster_arn=cluster_arn,
        secret_arn_lists=[secret_arn],
        opts=pulumi.ResourceOptions(depends_on=depends_on or [])
    )

    return {"association": association}


def create_kafka_resources(cluster_name: str, vpc_id: pulumi.Output[str], vpc_cidr: str,
                           client_subnet_ids: List[pulumi.Output[str]],
                           kafka_version: str, broker_count: int, instance_type: str, volume_size: int,
                           username: str, password: pulumi.Output[str], secret_name: str,
                           existing_kms_key_arn: str = "",
                           log_retention_in_days: int = 30,
                           tags: Dict[str, str] = None) -> Dict[str, Any]:
    """
    Create the complete MSK deployment

    Args:
        cluster_name: Platform / EKS cluster name used as resource prefix
        vpc_id: VPC ID
        vpc_cidr: VPC CIDR allowed to reach the brokers
        client_subnet_ids: Private subnets for the brokers
        kafka_version: Apache Kafka version
        broker_count: Number of brokers
        instance_type: Broker instance type
        volume_size: EBS volume size per broker in GiB
        username: SCRAM username
        password: SCRAM password (Pulumi secret)
        secret_name: Secrets Manager name, prefixed AmazonMSK_
        existing_kms_key_arn: Customer-managed storage key to use instead of creating one
        log_retention_in_days: Broker log retention
        tags: Additional tags

    Returns:
        Dict with all Kafka resources and outputs
    """
    tags = tags or {}

    security_group_result = create_kafka_security_group(cluster_name, vpc_id, [vpc_cidr], tags)

    if existing_kms_key_arn:
        storage_key_arn = pulumi.Output.from_input(existing_kms_key_arn)
        storage_key = None
    else:
        storage_key_result = create_kafka_kms_key(cluster_name, "storage", tags)
        storage_key_arn = storage_key_result["kms_key_arn"]
        storage_key = storage_key_result["kms_key"]

    secret_key_result = create_kafka_kms_key(cluster_name, "secret", tags)

    secret_result = create_scram_secret(
        cluster_name,
        secret_name,
        username,
        password,
        secret_key_result["kms_key_arn"],
        tags
    )

    log_group_result = create_broker_log_group(cluster_name, log_retention_in_days, tags)

    configuration_result = create_kafka_configuration(cluster_name, kafka_version, broker_count)

    cluster_result = create_kafka_cluster(
        name=cluster_name,
        kafka_version=kafka_version,
        broker_count=broker_count,
        instance_type=instance_type,
        volume_size=volume_size,
        client_subnet_ids=client_subnet_ids,
        security_group_id=security_group_result["security_group_id"],
        kms_key_arn=storage_key_arn,
        configuration_arn=configuration_result["configuration_arn"],
        configuration_revision=configuration_result["configuration_revision"],
        log_group_name=log_group_result["log_group_name"],
        tags=tags
    )

    association_result = associate_scram_secret(
        cluster_name,
        cluster_result["cluster_arn"],
        secret_result["secret_arn"],
        depends_on=[secret_result["secret_version"], secret_result["secret_policy"]]
    )

    pulumi.log.info(
        f"MSK {cluster_name}-msk: {broker_count} x {instance_type}, {volume_size} GiB, "
        f"Kafka {kafka_version}, SASL/SCRAM on {SASL_SCRAM_PORT}"
    )

    return {
        "cluster_arn": cluster_result["cluster_arn"],
        "bootstrap_brokers_sasl_scram": cluster_result["bootstrap_brokers_sasl_scram"],
        "secret_arn": secret_result["secret_arn"],
        "security_group_id": security_group_result["security_group_id"],
        "storage_kms_key_arn": storage_key_arn,
        # Keep references to resources for dependencies
        "_cluster": cluster_result["cluster"],
        "_security_group": security_group_result["security_group"],
        "_storage_key": storage_key,
        "_secret_key": secret_key_result["kms_key"],
        "_secret": secret_result["secret"],
        "_configuration": configuration_result["configuration"],
        "_log_group": log_group_result["log_group"],
        "_scram_association": association_result["association"]
    }
