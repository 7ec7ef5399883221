"""
Pytest configuration and fixtures for Keel tests.
"""

import tempfile
from pathlib import Path

import pytest
from pydantic import SecretStr

from keel.config import StackConfig
from keel.forge.state import MemoryStateStore
from keel.providers.simulated import SimulatedCloudProvider
from keel.resources import (
    DatabaseInstance,
    DbSubnetGroup,
    SecurityGroup,
    SecurityRule,
    Subnet,
    Vpc,
)
from keel.settings import reload_settings
from keel.stack import Stack


@pytest.fixture
def temp_dir():
    """Provide a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield Path(temp_dir)


@pytest.fixture(autouse=True)
def clean_settings(monkeypatch):
    """Run every test with default engine settings."""
    import os

    def _clear_keel_env():
        for name in list(os.environ):
            if name.startswith("KEEL_"):
                monkeypatch.delenv(name, raising=False)

    _clear_keel_env()
    reload_settings()
    yield
    _clear_keel_env()
    reload_settings()


@pytest.fixture
def provider():
    """In-memory simulated cloud."""
    return SimulatedCloudProvider(region="us-east-1")


@pytest.fixture
def store():
    """In-memory state store."""
    return MemoryStateStore("dev")


@pytest.fixture
def config():
    """Stack configuration for the database scenario."""
    return StackConfig(values={
        "dbName": "appdb",
        "dbUser": "admin",
        "dbPassword": SecretStr("s3cr3t-pa55"),
        "dbInstanceClass": "db.t3.micro",
        "allowedCidr": "10.0.0.0/16",
    })


def build_database_stack(config: StackConfig, **overrides) -> Stack:
    """Network, subnet, security group, subnet group and a MySQL database.

    Keyword overrides replace fields of the database instance.
    """
    network = Vpc(name="network", cidr_block=overrides.pop("cidr_block", "10.0.0.0/16"))
    subnet = Subnet(
        name="subnet-1",
        vpc_id=network.id,
        cidr_block="10.0.1.0/24",
        availability_zone="us-east-1a",
    )
    security_group = SecurityGroup(
        name="security-group",
        vpc_id=network.id,
        description="Allow MySQL access",
        ingress=[SecurityRule(
            protocol="tcp", from_port=3306, to_port=3306,
            cidr_blocks=[config.require("allowedCidr")],
        )],
    )
    subnet_group = DbSubnetGroup(
        name="subnet-group",
        group_name="app-subnet-group",
        subnet_ids=[subnet.id],
    )
    fields = dict(
        name="database",
        identifier="app-db",
        engine="mysql",
        instance_class=config.require("dbInstanceClass"),
        db_name=config.require("dbName"),
        username=config.require("dbUser"),
        password=config.require_secret("dbPassword"),
        db_subnet_group_name=subnet_group.output("name"),
        vpc_security_group_ids=[security_group.id],
        skip_final_snapshot=True,
    )
    fields.update(overrides)
    database = DatabaseInstance(**fields)

    return (
        Stack("database")
        .add(network, subnet, security_group, subnet_group, database)
        .export("endpoint", database.output("endpoint"))
        .export("port", database.output("port"))
        .export("vpcId", network.id)
        .export("subnetIds", [subnet.id])
        .export("securityGroupId", security_group.id)
    )


@pytest.fixture
def database_stack(config):
    """The database scenario stack built from the default config."""
    return build_database_stack(config)


@pytest.fixture
def make_database_stack(config):
    """Factory for variants of the database scenario stack."""
    def _make(**overrides) -> Stack:
        return build_database_stack(config, **overrides)
    return _make
