"""Network resources: VPC, gateway, routing, subnets and security groups."""

from typing import ClassVar, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .base import Reference, Resource
from .validators import validate_cidr


class Vpc(Resource):
    """Virtual network.

    Example:
        Vpc(name="my-vpc", cidr_block="10.0.0.0/16", tags={"Name": "my-vpc"})
    """

    kind: Literal["network"] = "network"

    immutable_fields: ClassVar[frozenset[str]] = frozenset({"cidr_block"})
    output_names: ClassVar[frozenset[str]] = frozenset({"id", "arn", "cidr_block"})
    delete_before_replace_default: ClassVar[bool] = True

    cidr_block: str = Field(..., examples=["10.0.0.0/16"])
    enable_dns_support: bool = True
    enable_dns_hostnames: bool = False
    tags: dict[str, str] = Field(default_factory=dict)

    @field_validator("cidr_block")
    @classmethod
    def check_cidr(cls, value: str) -> str:
        return validate_cidr(value)


class InternetGateway(Resource):
    """Internet gateway attached to a VPC."""

    kind: Literal["internet-gateway"] = "internet-gateway"

    immutable_fields: ClassVar[frozenset[str]] = frozenset({"vpc_id"})
    output_names: ClassVar[frozenset[str]] = frozenset({"id", "arn"})

    vpc_id: str | Reference
    tags: dict[str, str] = Field(default_factory=dict)


class Route(BaseModel):
    """A single route in a route table."""

    model_config = ConfigDict(extra="forbid")

    cidr_block: str
    gateway_id: str | Reference | None = None

    @field_validator("cidr_block")
    @classmethod
    def check_cidr(cls, value: str) -> str:
        return validate_cidr(value)


class RouteTable(Resource):
    """Route table within a VPC."""

    kind: Literal["route-table"] = "route-table"

    immutable_fields: ClassVar[frozenset[str]] = frozenset({"vpc_id"})
    output_names: ClassVar[frozenset[str]] = frozenset({"id", "arn"})

    vpc_id: str | Reference
    routes: list[Route] = Field(default_factory=list)
    tags: dict[str, str] = Field(default_factory=dict)


class Subnet(Resource):
    """Subnet in one availability zone of a VPC."""

    kind: Literal["subnet"] = "subnet"

    immutable_fields: ClassVar[frozenset[str]] = frozenset(
        {"vpc_id", "cidr_block", "availability_zone"}
    )
    output_names: ClassVar[frozenset[str]] = frozenset(
        {"id", "arn", "availability_zone", "cidr_block"}
    )

    vpc_id: str | Reference
    cidr_block: str
    availability_zone: str | None = None
    map_public_ip_on_launch: bool = False
    tags: dict[str, str] = Field(default_factory=dict)

    @field_validator("cidr_block")
    @classmethod
    def check_cidr(cls, value: str) -> str:
        return validate_cidr(value)


class RouteTableAssociation(Resource):
    """Associates a subnet with a route table."""

    kind: Literal["route-table-association"] = "route-table-association"

    immutable_fields: ClassVar[frozenset[str]] = frozenset({"subnet_id"})
    # A subnet can only have one association at a time
    delete_before_replace_default: ClassVar[bool] = True

    subnet_id: str | Reference
    route_table_id: str | Reference


class SecurityRule(BaseModel):
    """Ingress or egress rule of a security group.

    protocol "-1" means all protocols.
    """

    model_config = ConfigDict(extra="forbid")

    protocol: str
    from_port: int = Field(..., ge=0, le=65535)
    to_port: int = Field(..., ge=0, le=65535)
    cidr_blocks: list[str] = Field(default_factory=list)
    description: str | None = None

    @field_validator("cidr_blocks")
    @classmethod
    def check_cidrs(cls, value: list[str]) -> list[str]:
        return [validate_cidr(cidr) for cidr in value]


class SecurityGroup(Resource):
    """Security group with ingress and egress rules."""

    kind: Literal["security-group"] = "security-group"

    immutable_fields: ClassVar[frozenset[str]] = frozenset(
        {"vpc_id", "description", "group_name"}
    )
    output_names: ClassVar[frozenset[str]] = frozenset({"id", "arn", "name"})

    vpc_id: str | Reference
    description: str = "Managed by Keel"
    group_name: str | None = None
    ingress: list[SecurityRule] = Field(default_factory=list)
    egress: list[SecurityRule] = Field(default_factory=list)
    tags: dict[str, str] = Field(default_factory=dict)
