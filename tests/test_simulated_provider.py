"""Tests for the simulated cloud provider."""

import pytest

from keel.providers import CloudAPIError, SimulatedCloudProvider


def _network(provider, cidr="10.0.0.0/16"):
    return provider.create("network", "vpc", {"cidr_block": cidr})


def _database_props(group, **overrides):
    props = {
        "identifier": "app-db",
        "engine": "mysql",
        "instance_class": "db.t3.micro",
        "username": "admin",
        "password": "s3cr3t",
        "db_subnet_group_name": group,
    }
    props.update(overrides)
    return props


@pytest.fixture
def subnet_group(provider):
    vpc = _network(provider)
    subnet = provider.create("subnet", "subnet", {"vpc_id": vpc.resource_id, "cidr_block": "10.0.1.0/24"})
    return provider.create("subnet-group", "group", {
        "group_name": "app-group", "subnet_ids": [subnet.resource_id],
    })


class TestCreate:
    """Tests for resource creation."""

    def test_ids_follow_kind(self, provider):
        vpc = _network(provider)
        subnet = provider.create("subnet", "s", {"vpc_id": vpc.resource_id, "cidr_block": "10.0.1.0/24"})
        sg = provider.create("security-group", "sg", {"vpc_id": vpc.resource_id})

        assert vpc.resource_id.startswith("vpc-")
        assert subnet.resource_id.startswith("subnet-")
        assert sg.resource_id.startswith("sg-")
        assert vpc.outputs["arn"].startswith("arn:aws:ec2:us-east-1:")

    def test_subnet_defaults_availability_zone(self, provider):
        vpc = _network(provider)

        subnet = provider.create("subnet", "s", {"vpc_id": vpc.resource_id, "cidr_block": "10.0.1.0/24"})

        assert subnet.outputs["availability_zone"] == "us-east-1a"

    def test_missing_reference_is_not_found(self, provider):
        with pytest.raises(CloudAPIError) as exc_info:
            provider.create("subnet", "s", {"vpc_id": "vpc-0123456789abcdef0", "cidr_block": "10.0.1.0/24"})

        assert exc_info.value.code == "NotFound"

    def test_subnet_group_id_is_its_name(self, subnet_group):
        assert subnet_group.resource_id == "app-group"
        assert subnet_group.outputs["name"] == "app-group"

    def test_subnet_group_needs_subnets(self, provider):
        with pytest.raises(CloudAPIError) as exc_info:
            provider.create("subnet-group", "g", {"group_name": "empty", "subnet_ids": []})

        assert exc_info.value.code == "InvalidParameterValue"

    def test_exclusive_names_conflict(self, provider, subnet_group):
        provider.create("database-instance", "db", _database_props("app-group"))

        with pytest.raises(CloudAPIError) as exc_info:
            provider.create("database-instance", "db2", _database_props("app-group"))

        assert exc_info.value.code == "AlreadyExists"

    def test_unknown_subnet_group(self, provider):
        with pytest.raises(CloudAPIError) as exc_info:
            provider.create("database-instance", "db", _database_props("nope"))

        assert exc_info.value.code == "DBSubnetGroupNotFoundFault"

    def test_database_requires_password(self, provider, subnet_group):
        with pytest.raises(CloudAPIError) as exc_info:
            provider.create("database-instance", "db", _database_props("app-group", password=""))

        assert exc_info.value.code == "InvalidParameterValue"

    def test_unknown_kind_echoes_properties(self, provider):
        result = provider.create("bucket", "logs", {"region": "eu-west-1"})

        assert result.resource_id.startswith("bucket-")
        assert result.outputs["region"] == "eu-west-1"


class TestDatabaseOutputs:
    """Tests for database endpoint and port outputs."""

    def test_mysql_default_port(self, provider, subnet_group):
        result = provider.create("database-instance", "db", _database_props("app-group"))

        assert result.outputs["port"] == 3306
        assert result.outputs["address"].startswith("app-db.")
        assert result.outputs["address"].endswith(".us-east-1.rds.amazonaws.com")
        assert result.outputs["endpoint"] == f"{result.outputs['address']}:3306"

    def test_postgres_default_port(self, provider, subnet_group):
        result = provider.create(
            "database-instance", "db", _database_props("app-group", engine="postgres"),
        )

        assert result.outputs["port"] == 5432

    def test_explicit_port(self, provider, subnet_group):
        result = provider.create(
            "database-instance", "db", _database_props("app-group", port=3307),
        )

        assert result.outputs["endpoint"].endswith(":3307")

    def test_update_keeps_address(self, provider, subnet_group):
        created = provider.create("database-instance", "db", _database_props("app-group"))

        outputs = provider.update(
            "database-instance", created.resource_id,
            _database_props("app-group", instance_class="db.t3.large"),
        )

        assert outputs["address"] == created.outputs["address"]

    def test_password_is_never_stored(self, provider, subnet_group):
        provider.create("database-instance", "db", _database_props("app-group"))

        stored = provider.objects("database-instance")[0]

        assert "password" not in stored.properties
        assert "s3cr3t" not in stored.model_dump_json()


class TestUpdateAndDelete:
    """Tests for update, delete and read."""

    def test_update_missing_is_not_found(self, provider):
        with pytest.raises(CloudAPIError) as exc_info:
            provider.update("network", "vpc-0123456789abcdef0", {"cidr_block": "10.0.0.0/16"})

        assert exc_info.value.code == "NotFound"

    def test_delete_missing_is_noop(self, provider):
        provider.delete("network", "vpc-0123456789abcdef0")

        assert provider.call_log == [("delete", "network", "vpc-0123456789abcdef0")]

    def test_delete_referenced_is_dependency_violation(self, provider):
        vpc = _network(provider)
        provider.create("subnet", "s", {"vpc_id": vpc.resource_id, "cidr_block": "10.0.1.0/24"})

        with pytest.raises(CloudAPIError) as exc_info:
            provider.delete("network", vpc.resource_id)

        assert exc_info.value.code == "DependencyViolation"
        assert provider.read("network", vpc.resource_id) is not None

    def test_delete_then_read(self, provider):
        vpc = _network(provider)

        provider.delete("network", vpc.resource_id)

        assert provider.read("network", vpc.resource_id) is None
        assert len(provider) == 0

    def test_read_checks_kind(self, provider):
        vpc = _network(provider)

        assert provider.read("subnet", vpc.resource_id) is None
        assert provider.read("network", vpc.resource_id)["id"] == vpc.resource_id


class TestPersistenceAndTimeouts:
    """Tests for the file-backed cloud and slow calls."""

    def test_objects_survive_restart(self, temp_dir):
        path = temp_dir / "cloud.json"
        first = SimulatedCloudProvider(store_path=path)
        vpc = _network(first)

        second = SimulatedCloudProvider(store_path=path)

        assert second.read("network", vpc.resource_id) == vpc.outputs

    def test_slow_call_times_out(self):
        provider = SimulatedCloudProvider(latency=0.05)

        with pytest.raises(TimeoutError):
            provider.create("network", "vpc", {"cidr_block": "10.0.0.0/16"}, timeout=0.01)

        assert len(provider) == 0

    def test_slow_call_within_timeout(self):
        provider = SimulatedCloudProvider(latency=0.01)

        result = provider.create("network", "vpc", {"cidr_block": "10.0.0.0/16"}, timeout=1.0)

        assert result.resource_id.startswith("vpc-")
