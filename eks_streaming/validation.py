"""
Pre-flight validation of stack configuration
Runs before any resource is declared so bad input fails the program early
"""

import ipaddress
import pulumi
from typing import List

from .config import Config, SCRAM_SECRET_PREFIX


class ConfigError(ValueError):
    """Raised when stack configuration cannot produce a valid deployment"""

    def __init__(self, problems: List[str]):
        self.problems = list(problems)
        super().__init__("Invalid stack configuration:\n  - " + "\n  - ".join(self.problems))


def validate_subnet_layout(vpc_cidr: str, private_subnet_cidrs: List[str],
                           public_subnet_cidrs: List[str]) -> List[str]:
    """
    Check that every subnet sits inside the VPC and no two subnets overlap

    Args:
        vpc_cidr: VPC CIDR block
        private_subnet_cidrs: Private subnet CIDR blocks
        public_subnet_cidrs: Public subnet CIDR blocks

    Returns:
        List of problems, empty when the layout is valid
    """
    problems = []
    try:
        vpc_network = ipaddress.ip_network(vpc_cidr)
    except ValueError as e:
        return [f"vpc_cidr {vpc_cidr!r} is not a valid CIDR block: {e}"]

    networks = []
    for kind, cidrs in (("private", private_subnet_cidrs), ("public", public_subnet_cidrs)):
        for cidr in cidrs:
            try:
                network = ipaddress.ip_network(cidr)
            except ValueError as e:
                problems.append(f"{kind} subnet {cidr!r} is not a valid CIDR block: {e}")
                continue
            if network.version != vpc_network.version or not network.subnet_of(vpc_network):
                problems.append(f"{kind} subnet {cidr} is outside vpc_cidr {vpc_cidr}")
            networks.append((kind, cidr, network))

    for i, (kind_a, cidr_a, net_a) in enumerate(networks):
        for kind_b, cidr_b, net_b in networks[i + 1:]:
            if net_a.version == net_b.version and net_a.overlaps(net_b):
                problems.append(f"{kind_a} subnet {cidr_a} overlaps {kind_b} subnet {cidr_b}")

    return problems


def validate_subnet_zones(availability_zones: List[str], private_subnet_cidrs: List[str],
                          public_subnet_cidrs: List[str]) -> List[str]:
    """Each subnet list must line up one-to-one with the availability zones"""
    problems = []
    if not availability_zones:
        problems.append("availability_zones must not be empty")
    for kind, cidrs in (("private", private_subnet_cidrs), ("public", public_subnet_cidrs)):
        if len(cidrs) != len(availability_zones):
            problems.append(
                f"Number of {kind}_subnet_cidrs ({len(cidrs)}) "
                f"does not match number of availability_zones ({len(availability_zones)})"
            )
    return problems


def validate_scaling(min_size: int, desired_size: int, max_size: int) -> List[str]:
    problems = []
    if min_size < 0:
        problems.append(f"node_min_size ({min_size}) must not be negative")
    if max_size < 1:
        problems.append(f"node_max_size ({max_size}) must be at least 1")
    if not min_size <= desired_size <= max_size:
        problems.append(
            f"node sizes must satisfy min <= desired <= max, got "
            f"{min_size} / {desired_size} / {max_size}"
        )
    return problems


def validate_secret_name(secret_name: str) -> List[str]:
    # MSK only associates SCRAM secrets carrying this prefix
    if not secret_name.startswith(SCRAM_SECRET_PREFIX):
        return [f"kafka_secret_name {secret_name!r} must start with {SCRAM_SECRET_PREFIX!r}"]
    return []


def validate_kms_key(kms_key_arn: str) -> List[str]:
    """An explicitly configured Kafka key must be customer managed"""
    if not kms_key_arn:
        return []
    if ":alias/aws/" in kms_key_arn or kms_key_arn.startswith("alias/aws/"):
        return [f"kafka_kms_key_arn {kms_key_arn!r} is an AWS managed key; use a customer managed key"]
    if not kms_key_arn.startswith("arn:"):
        return [f"kafka_kms_key_arn {kms_key_arn!r} must be a full key ARN"]
    return []


def validate_broker_count(broker_count: int, client_subnet_count: int) -> List[str]:
    if broker_count < 1:
        return [f"kafka_broker_count ({broker_count}) must be at least 1"]
    if client_subnet_count and broker_count % client_subnet_count != 0:
        return [
            f"kafka_broker_count ({broker_count}) must be a multiple of the number "
            f"of client subnets ({client_subnet_count})"
        ]
    return []


def collect_problems(config: Config) -> List[str]:
    problems = []
    problems += validate_subnet_layout(config.vpc_cidr, config.private_subnet_cidrs,
                                       config.public_subnet_cidrs)
    problems += validate_subnet_zones(config.availability_zones, config.private_subnet_cidrs,
                                      config.public_subnet_cidrs)
    problems += validate_scaling(config.node_min_size, config.node_desired_size, config.node_max_size)
    problems += validate_secret_name(config.kafka_secret_name)
    problems += validate_kms_key(config.kafka_kms_key_arn)
    problems += validate_broker_count(config.kafka_broker_count, len(config.private_subnet_cidrs))
    return problems


def validate_config(config: Config) -> None:
    """
    Validate the whole configuration surface

    Raises:
        ConfigError: listing every problem found
    """
    problems = collect_problems(config)
    if problems:
        for problem in problems:
            pulumi.log.error(problem)
        raise ConfigError(problems)
    pulumi.log.info(f"Configuration for cluster {config.cluster_name} validated")
