"""Managed relational database resources."""

from typing import ClassVar, Literal

from pydantic import Field, SecretStr

from .base import Reference, Resource


class DbSubnetGroup(Resource):
    """Group of subnets a database instance can be placed in.

    The group name is the external identifier and must be unique, so a
    replacement has to delete the old group before creating the new one.
    """

    kind: Literal["subnet-group"] = "subnet-group"

    immutable_fields: ClassVar[frozenset[str]] = frozenset({"group_name"})
    output_names: ClassVar[frozenset[str]] = frozenset({"id", "arn", "name"})
    delete_before_replace_default: ClassVar[bool] = True

    group_name: str = Field(..., min_length=1)
    description: str = "Managed by Keel"
    subnet_ids: list[str | Reference] = Field(..., min_length=1)
    tags: dict[str, str] = Field(default_factory=dict)


class DatabaseInstance(Resource):
    """Managed relational database instance.

    ``identifier`` is the external name of the instance. Engine, database name,
    master username, subnet group and encryption cannot change in place.

    Outputs:
        id, arn, address, endpoint ("address:port"), port
    """

    kind: Literal["database-instance"] = "database-instance"

    immutable_fields: ClassVar[frozenset[str]] = frozenset({
        "identifier",
        "engine",
        "db_name",
        "username",
        "db_subnet_group_name",
        "storage_encrypted",
    })
    output_names: ClassVar[frozenset[str]] = frozenset(
        {"id", "arn", "address", "endpoint", "port"}
    )
    delete_before_replace_default: ClassVar[bool] = True

    identifier: str = Field(..., min_length=1)
    engine: str = Field(..., examples=["mysql", "postgres"])
    engine_version: str | None = None
    instance_class: str = Field(..., examples=["db.t3.micro"])
    allocated_storage: int = Field(20, ge=20)
    storage_type: str = "gp3"
    storage_encrypted: bool = False
    db_name: str | None = None
    username: str
    password: SecretStr | Reference
    port: int | None = Field(None, ge=1150, le=65535)
    db_subnet_group_name: str | Reference | None = None
    vpc_security_group_ids: list[str | Reference] = Field(default_factory=list)
    publicly_accessible: bool = False
    skip_final_snapshot: bool = False
    tags: dict[str, str] = Field(default_factory=dict)
