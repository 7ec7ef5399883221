"""
Keel Resources - Pydantic models for declarative infrastructure nodes.
"""

from .base import CustomResource, Reference, Resource
from .database import DatabaseInstance, DbSubnetGroup
from .network import (
    InternetGateway,
    Route,
    RouteTable,
    RouteTableAssociation,
    SecurityGroup,
    SecurityRule,
    Subnet,
    Vpc,
)

__all__ = [
    "CustomResource",
    "DatabaseInstance",
    "DbSubnetGroup",
    "InternetGateway",
    "Reference",
    "Resource",
    "Route",
    "RouteTable",
    "RouteTableAssociation",
    "SecurityGroup",
    "SecurityRule",
    "Subnet",
    "Vpc",
]
