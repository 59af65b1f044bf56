"""
VPC Module Functions
Creates VPC, public/private subnets, NAT and route tables for EKS and MSK
"""

import pulumi
import pulumi_aws as aws
from typing import Dict, List, Any


def create_vpc(name: str, cidr: str, tags: Dict[str, str] = None) -> Dict[str, Any]:
    """
    Create VPC with DNS settings

    Args:
        name: VPC name
        cidr: VPC CIDR block
        tags: Additional tags

    Returns:
        Dict with vpc resource and outputs
    """
    tags = tags or {}

    vpc = aws.ec2.Vpc(
        f"{name}-vpc",
        cidr_block=cidr,
        enable_dns_hostnames=True,
        enable_dns_support=True,
        tags={
            **tags,
            "Name": f"{name}-vpc",
            f"kubernetes.io/cluster/{name}": "shared",
            "Module": "vpc"
        }
    )

    return {
        "vpc": vpc,
        "vpc_id": vpc.id,
        "vpc_cidr_block": vpc.cidr_block
    }


def create_internet_gateway(name: str, vpc_id: pulumi.Output[str], tags: Dict[str, str] = None) -> Dict[str, Any]:
    tags = tags or {}

    igw = aws.ec2.InternetGateway(
        f"{name}-igw",
        vpc_id=vpc_id,
        tags={
            **tags,
            "Name": f"{name}-igw",
            "Module": "vpc"
        }
    )

    return {
        "igw": igw,
        "igw_id": igw.id
    }


def create_subnets(name: str, vpc_id: pulumi.Output[str], subnet_cidrs: List[str],
                   availability_zones: List[str], public: bool,
                   tags: Dict[str, str] = None) -> Dict[str, Any]:
    """
    Create one subnet per availability zone

    Public subnets carry the ELB role tag and map public IPs on launch;
    private subnets carry the internal-ELB role tag.

    Args:
        name: Resource name prefix
        vpc_id: VPC ID
        subnet_cidrs: List of CIDR blocks for subnets
        availability_zones: List of availability zones, same length as subnet_cidrs
        public: Whether the subnets are public
        tags: Additional tags

    Returns:
        Dict with subnet resources and outputs
    """
    tags = tags or {}
    kind = "public" if public else "private"
    role_tag = "kubernetes.io/role/elb" if public else "kubernetes.io/role/internal-elb"

    subnets = []
    for i, cidr in enumerate(subnet_cidrs):
        subnet = aws.ec2.Subnet(
            f"{name}-{kind}-subnet-{i+1}",
            vpc_id=vpc_id,
            cidr_block=cidr,
            availability_zone=availability_zones[i],
            map_public_ip_on_launch=public,
            tags={
                **tags,
                "Name": f"{name}-{kind}-subnet-{i+1}",
                "Type": kind,
                f"kubernetes.io/cluster/{name}": "shared",
                role_tag: "1",
                "Module": "vpc"
            }
        )
        subnets.append(subnet)

    return {
        "subnets": subnets,
        "subnet_ids": [subnet.id for subnet in subnets],
        "availability_zones": availability_zones
    }


def create_public_route_table(name: str, vpc_id: pulumi.Output[str], igw_id: pulumi.Output[str],
                              subnet_ids: List[pulumi.Output[str]], tags: Dict[str, str] = None) -> Dict[str, Any]:
    """
    Create route table for public subnets

    Args:
        name: Resource name prefix
        vpc_id: VPC ID
        igw_id: Internet Gateway ID
        subnet_ids: List of subnet IDs to associate
        tags: Additional tags

    Returns:
        Dict with route table resources and outputs
    """
    tags = tags or {}

    route_table = aws.ec2.RouteTable(
        f"{name}-public-rt",
        vpc_id=vpc_id,
        tags={
            **tags,
            "Name": f"{name}-public-rt",
            "Module": "vpc"
        }
    )

    route = aws.ec2.Route(
        f"{name}-public-route",
        route_table_id=route_table.id,
        destination_cidr_block="0.0.0.0/0",
        gateway_id=igw_id
    )

    associations = []
    for i, subnet_id in enumerate(subnet_ids):
        association = aws.ec2.RouteTableAssociation(
            f"{name}-public-rta-{i+1}",
            subnet_id=subnet_id,
            route_table_id=route_table.id
        )
        associations.append(association)

    return {
        "route_table": route_table,
        "route": route,
        "associations": associations,
        "route_table_id": route_table.id
    }


def create_nat_gateways(name: str, public_subnet_ids: List[pulumi.Output[str]], single_nat_gateway: bool = True,
                        igw=None, tags: Dict[str, str] = None) -> Dict[str, Any]:
    """
    Create NAT gateways in the public subnets

    Args:
        name: Resource name prefix
        public_subnet_ids: Public subnet IDs, one NAT per subnet unless single_nat_gateway
        single_nat_gateway: Share one NAT gateway across all private subnets
        igw: Internet gateway the NAT gateways depend on
        tags: Additional tags

    Returns:
        Dict with NAT gateway resources and their IDs
    """
    tags = tags or {}
    subnet_ids = public_subnet_ids[:1] if single_nat_gateway else public_subnet_ids
    opts = pulumi.ResourceOptions(depends_on=[igw]) if igw is not None else None

    eips = []
    nat_gateways = []
    for i, subnet_id in enumerate(subnet_ids):
        eip = aws.ec2.Eip(
            f"{name}-nat-eip-{i+1}",
            domain="vpc",
            tags={
                **tags,
                "Name": f"{name}-nat-eip-{i+1}",
                "Module": "vpc"
            },
            opts=opts
        )
        nat = aws.ec2.NatGateway(
            f"{name}-nat-{i+1}",
            allocation_id=eip.id,
            subnet_id=subnet_id,
            tags={
                **tags,
                "Name": f"{name}-nat-{i+1}",
                "Module": "vpc"
            },
            opts=opts
        )
        eips.append(eip)
        nat_gateways.append(nat)

    return {
        "eips": eips,
        "nat_gateways": nat_gateways,
        "nat_gateway_ids": [nat.id for nat in nat_gateways]
    }


def create_private_route_tables(name: str, vpc_id: pulumi.Output[str], nat_gateway_ids: List[pulumi.Output[str]],
                                subnet_ids: List[pulumi.Output[str]], tags: Dict[str, str] = None) -> Dict[str, Any]:
    """
    Create one route table per private subnet, egressing through a NAT gateway

    With a single NAT gateway every private subnet routes through it.
    """
    tags = tags or {}

    route_tables = []
    associations = []
    for i, subnet_id in enumerate(subnet_ids):
        route_table = aws.ec2.RouteTable(
            f"{name}-private-rt-{i+1}",
            vpc_id=vpc_id,
            tags={
                **tags,
                "Name": f"{name}-private-rt-{i+1}",
                "Module": "vpc"
            }
        )
        aws.ec2.Route(
            f"{name}-private-route-{i+1}",
            route_table_id=route_table.id,
            destination_cidr_block="0.0.0.0/0",
            nat_gateway_id=nat_gateway_ids[min(i, len(nat_gateway_ids) - 1)]
        )
        association = aws.ec2.RouteTableAssociation(
            f"{name}-private-rta-{i+1}",
            subnet_id=subnet_id,
            route_table_id=route_table.id
        )
        route_tables.append(route_table)
        associations.append(association)

    return {
        "route_tables": route_tables,
        "associations": associations,
        "route_table_ids": [rt.id for rt in route_tables]
    }


def create_cluster_security_group(name: str, vpc_id: pulumi.Output[str], vpc_cidr: str,
                                  tags: Dict[str, str] = None) -> Dict[str, Any]:
    """
    Create additional security group for the EKS control plane

    Args:
        name: Resource name prefix
        vpc_id: VPC ID
        vpc_cidr: VPC CIDR allowed to reach the API server
        tags: Additional tags

    Returns:
        Dict with security group resources and outputs
    """
    tags = tags or {}

    security_group = aws.ec2.SecurityGroup(
        f"{name}-cluster-sg",
        name_prefix=f"{name}-cluster-",
        description=f"Additional security group for EKS cluster {name}",
        vpc_id=vpc_id,
        tags={
            **tags,
            "Name": f"{name}-cluster-sg",
            "Module": "vpc"
        }
    )

    # API server from inside the VPC
    ingress_rule = aws.ec2.SecurityGroupRule(
        f"{name}-cluster-ingress-https",
        type="ingress",
        from_port=443,
        to_port=443,
        protocol="tcp",
        cidr_blocks=[vpc_cidr],
        security_group_id=security_group.id
    )

    egress_rule = aws.ec2.SecurityGroupRule(
        f"{name}-cluster-egress",
        type="egress",
        from_port=0,
        to_port=65535,
        protocol="-1",
        cidr_blocks=["0.0.0.0/0"],
        security_group_id=security_group.id
    )

    return {
        "security_group": security_group,
        "ingress_rule": ingress_rule,
        "egress_rule": egress_rule,
        "security_group_id": security_group.id
    }


def create_vpc_resources(cluster_name: str, vpc_cidr: str, availability_zones: List[str],
                         private_subnet_cidrs: List[str], public_subnet_cidrs: List[str],
                         single_nat_gateway: bool = True, tags: Dict[str, str] = None) -> Dict[str, Any]:
    """
    Create complete VPC infrastructure for EKS and MSK

    Args:
        cluster_name: EKS cluster name
        vpc_cidr: VPC CIDR block
        availability_zones: Availability zones, one per subnet
        private_subnet_cidrs: Private subnet CIDR blocks (nodes, brokers)
        public_subnet_cidrs: Public subnet CIDR blocks (NAT, load balancers)
        single_nat_gateway: Share one NAT gateway across private subnets
        tags: Additional tags for all resources

    Returns:
        Dict with all VPC resources and outputs
    """
    tags = tags or {}

    vpc_result = create_vpc(cluster_name, vpc_cidr, tags)

    igw_result = create_internet_gateway(cluster_name, vpc_result["vpc_id"], tags)

    public_result = create_subnets(
        cluster_name,
        vpc_result["vpc_id"],
        public_subnet_cidrs,
        availability_zones,
        public=True,
        tags=tags
    )

    private_result = create_subnets(
        cluster_name,
        vpc_result["vpc_id"],
        private_subnet_cidrs,
        availability_zones,
        public=False,
        tags=tags
    )

    public_rt_result = create_public_route_table(
        cluster_name,
        vpc_result["vpc_id"],
        igw_result["igw_id"],
        public_result["subnet_ids"],
        tags
    )

    nat_result = create_nat_gateways(
        cluster_name,
        public_result["subnet_ids"],
        single_nat_gateway=single_nat_gateway,
        igw=igw_result["igw"],
        tags=tags
    )

    private_rt_result = create_private_route_tables(
        cluster_name,
        vpc_result["vpc_id"],
        nat_result["nat_gateway_ids"],
        private_result["subnet_ids"],
        tags
    )

    cluster_sg_result = create_cluster_security_group(cluster_name, vpc_result["vpc_id"], vpc_cidr, tags)

    pulumi.log.info(
        f"VPC {cluster_name}: {len(private_subnet_cidrs)} private / {len(public_subnet_cidrs)} public subnets, "
        f"{len(nat_result['nat_gateways'])} NAT gateway(s)"
    )

    return {
        "vpc_id": vpc_result["vpc_id"],
        "vpc_cidr_block": vpc_result["vpc_cidr_block"],
        "private_subnet_ids": private_result["subnet_ids"],
        "public_subnet_ids": public_result["subnet_ids"],
        "availability_zones": availability_zones,
        "cluster_security_group_id": cluster_sg_result["security_group_id"],
        "nat_gateway_ids": nat_result["nat_gateway_ids"],
        # Keep references to all resources for dependencies
        "_vpc": vpc_result["vpc"],
        "_igw": igw_result["igw"],
        "_public_subnets": public_result["subnets"],
        "_private_subnets": private_result["subnets"],
        "_public_route_table": public_rt_result["route_table"],
        "_private_route_tables": private_rt_result["route_tables"],
        "_nat_gateways": nat_result["nat_gateways"],
        "_cluster_sg": cluster_sg_result["security_group"]
    }
