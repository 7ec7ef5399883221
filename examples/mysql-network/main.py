"""
MySQL Network Example - VPC, public subnets and a managed MySQL instance.

Topology:
- VPC 10.0.0.0/16 with an internet gateway and a default route
- Two subnets in different availability zones, both associated with the route table
- Security group allowing MySQL (3306) from the configured CIDR only
- DB subnet group spanning both subnets
- MySQL 8.0 instance placed in the subnet group

Configuration (stack.json or KEEL_CONFIG_* / KEEL_SECRET_* env vars):
- dbName, dbUser, dbInstanceClass, allowedCidr (required)
- dbPassword (required secret)

Outputs: endpoint, port, vpcId, subnetIds, securityGroupId

Usage:
    cd examples/mysql-network
    export KEEL_SECRET_DB_PASSWORD=...
    keel plan
    keel apply
"""

from keel import Stack, StackConfig
from keel.resources import (
    DatabaseInstance,
    DbSubnetGroup,
    InternetGateway,
    Route,
    RouteTable,
    RouteTableAssociation,
    SecurityGroup,
    SecurityRule,
    Subnet,
    Vpc,
)


def build(config: StackConfig) -> Stack:
    db_name = config.require("dbName")
    db_user = config.require("dbUser")
    db_password = config.require_secret("dbPassword")
    db_instance_class = config.require("dbInstanceClass")
    allowed_cidr = config.require("allowedCidr")

    vpc = Vpc(
        name="my-vpc",
        cidr_block="10.0.0.0/16",
        enable_dns_support=True,
        enable_dns_hostnames=True,
        tags={"Name": "my-vpc"},
    )

    gateway = InternetGateway(
        name="my-internet-gateway",
        vpc_id=vpc.id,
        tags={"Name": "my-internet-gateway"},
    )

    route_table = RouteTable(
        name="my-route-table",
        vpc_id=vpc.id,
        routes=[Route(cidr_block="0.0.0.0/0", gateway_id=gateway.id)],
        tags={"Name": "my-route-table"},
    )

    subnet1 = Subnet(
        name="subnet-1",
        vpc_id=vpc.id,
        cidr_block="10.0.1.0/24",
        availability_zone="us-east-1a",
        tags={"Name": "my-subnet-1"},
    )

    subnet2 = Subnet(
        name="subnet-2",
        vpc_id=vpc.id,
        cidr_block="10.0.2.0/24",
        availability_zone="us-east-1b",
        tags={"Name": "my-subnet-2"},
    )

    associations = [
        RouteTableAssociation(
            name=f"{subnet.name.replace('-', '')}-association",
            subnet_id=subnet.id,
            route_table_id=route_table.id,
        )
        for subnet in (subnet1, subnet2)
    ]

    security_group = SecurityGroup(
        name="rds-security-group",
        vpc_id=vpc.id,
        description="Allow MySQL access",
        ingress=[
            SecurityRule(protocol="tcp", from_port=3306, to_port=3306, cidr_blocks=[allowed_cidr]),
        ],
        egress=[
            SecurityRule(protocol="-1", from_port=0, to_port=0, cidr_blocks=["0.0.0.0/0"]),
        ],
    )

    subnet_group = DbSubnetGroup(
        name="rds-subnet-group",
        group_name="my-subnet-group",
        subnet_ids=[subnet1.id, subnet2.id],
        tags={"Name": "my-subnet-group"},
    )

    db = DatabaseInstance(
        name="rds-instance",
        identifier="my-instance",
        allocated_storage=20,
        engine="mysql",
        engine_version="8.0.35",
        instance_class=db_instance_class,
        db_name=db_name,
        username=db_user,
        password=db_password,
        skip_final_snapshot=True,
        db_subnet_group_name=subnet_group.output("name"),
        vpc_security_group_ids=[security_group.id],
        publicly_accessible=True,
        storage_type="gp3",
        tags={"Name": "my-rds-instance"},
    )

    return (
        Stack("mysql-network")
        .add(vpc, gateway, route_table, subnet1, subnet2, *associations)
        .add(security_group, subnet_group, db)
        .export("endpoint", db.output("endpoint"))
        .export("port", db.output("port"))
        .export("vpcId", vpc.id)
        .export("subnetIds", [subnet1.id, subnet2.id])
        .export("securityGroupId", security_group.id)
    )
