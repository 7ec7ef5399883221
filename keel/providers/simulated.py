"""
Simulated cloud provider.

An in-memory (optionally file-backed) stand-in for a cloud API that behaves
enough like the real thing to exercise ordering and failure handling:

- ids are generated per kind (vpc-..., subnet-..., sg-...)
- referencing a missing id fails with a NotFound error
- exclusive names (subnet group name, database identifier) conflict
- deleting a resource that a live resource still references fails with
  DependencyViolation
- database instances publish an endpoint and the engine's default port

Write-only properties such as passwords are accepted but never stored.
"""

import json
import logging
import re
import threading
import time
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from .base import CloudAPIError, Provider, ProviderResult

logger = logging.getLogger(__name__)

ACCOUNT_ID = "000000000000"

ID_PREFIXES = {
    "network": "vpc",
    "internet-gateway": "igw",
    "route-table": "rtb",
    "route-table-association": "rtbassoc",
    "subnet": "subnet",
    "security-group": "sg",
    "database-instance": "db",
}

DEFAULT_PORTS = {
    "mysql": 3306,
    "mariadb": 3306,
    "aurora-mysql": 3306,
    "postgres": 5432,
    "aurora-postgresql": 5432,
    "sqlserver-ex": 1433,
    "sqlserver-se": 1433,
    "oracle-se2": 1521,
}

# Name-bearing properties that must be unique per kind
EXCLUSIVE_NAMES = {
    "subnet-group": "group_name",
    "database-instance": "identifier",
}

WRITE_ONLY_PROPERTIES = frozenset({"password"})

_ID_PATTERN = re.compile(r"^(%s)-[0-9a-f]{17}$" % "|".join(sorted(set(ID_PREFIXES.values()))))


class CloudObject(BaseModel):
    """A resource living in the simulated cloud."""

    kind: str
    resource_id: str
    name: str
    properties: dict[str, Any] = Field(default_factory=dict)
    outputs: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.now)


def _strings(value: Any):
    """Yield every string nested inside a value."""
    if isinstance(value, str):
        yield value
    elif isinstance(value, dict):
        for item in value.values():
            yield from _strings(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from _strings(item)


class SimulatedCloudProvider(Provider):
    """Provider backed by an in-process fake cloud.

    Args:
        region: Region used in ARNs, endpoints and default availability zones
        store_path: Optional JSON file to persist the fake cloud between runs
        latency: Seconds each mutating call takes
    """

    name = "simulated"

    def __init__(
        self,
        region: str = "us-east-1",
        store_path: Path | None = None,
        latency: float = 0.0,
    ):
        self.region = region
        self.store_path = Path(store_path) if store_path else None
        self.latency = latency
        self.call_log: list[tuple[str, str, str]] = []
        self._objects: dict[str, CloudObject] = {}
        self._lock = threading.RLock()
        self._load()

    # ------------------------------------------------------------------
    # Provider API
    # ------------------------------------------------------------------

    def create(
        self, kind: str, name: str, properties: dict[str, Any], timeout: float | None = None
    ) -> ProviderResult:
        self._simulate_latency(timeout)
        with self._lock:
            self.call_log.append(("create", kind, name))
            self._check_references(kind, properties)
            self._check_exclusive_name(kind, properties)
            self._validate(kind, properties)

            resource_id = self._new_id(kind, properties)
            outputs = self._outputs(kind, resource_id, name, properties, previous=None)
            self._objects[resource_id] = CloudObject(
                kind=kind,
                resource_id=resource_id,
                name=name,
                properties=self._storable(properties),
                outputs=outputs,
            )
            self._save()

        logger.debug(f"[simulated] created {kind} {resource_id}")
        return ProviderResult(resource_id=resource_id, outputs=dict(outputs))

    def update(
        self, kind: str, resource_id: str, properties: dict[str, Any], timeout: float | None = None
    ) -> dict[str, Any]:
        self._simulate_latency(timeout)
        with self._lock:
            self.call_log.append(("update", kind, resource_id))
            obj = self._get(kind, resource_id)
            self._check_references(kind, properties)
            self._validate(kind, properties)

            obj.outputs = self._outputs(kind, resource_id, obj.name, properties, previous=obj.outputs)
            obj.properties = self._storable(properties)
            self._save()

        logger.debug(f"[simulated] updated {kind} {resource_id}")
        return dict(obj.outputs)

    def delete(self, kind: str, resource_id: str, timeout: float | None = None) -> None:
        self._simulate_latency(timeout)
        with self._lock:
            self.call_log.append(("delete", kind, resource_id))
            if resource_id not in self._objects:
                logger.debug(f"[simulated] {kind} {resource_id} already gone")
                return

            dependents = [
                other.resource_id
                for other in self._objects.values()
                if other.resource_id != resource_id
                and resource_id in set(_strings(other.properties))
            ]
            if dependents:
                raise CloudAPIError(
                    "DependencyViolation",
                    f"{kind} {resource_id} is still referenced by {', '.join(sorted(dependents))}",
                )

            del self._objects[resource_id]
            self._save()

        logger.debug(f"[simulated] deleted {kind} {resource_id}")

    def read(self, kind: str, resource_id: str) -> dict[str, Any] | None:
        with self._lock:
            obj = self._objects.get(resource_id)
            if obj is None or obj.kind != kind:
                return None
            return dict(obj.outputs)

    # ------------------------------------------------------------------
    # Inspection helpers
    # ------------------------------------------------------------------

    def objects(self, kind: str | None = None) -> list[CloudObject]:
        """Live objects, optionally filtered by kind."""
        with self._lock:
            return [
                obj.model_copy(deep=True)
                for obj in self._objects.values()
                if kind is None or obj.kind == kind
            ]

    def __len__(self) -> int:
        return len(self._objects)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _simulate_latency(self, timeout: float | None) -> None:
        if self.latency <= 0:
            return
        if timeout is not None and self.latency > timeout:
            time.sleep(timeout)
            raise TimeoutError(f"provider call exceeded {timeout}s")
        time.sleep(self.latency)

    def _get(self, kind: str, resource_id: str) -> CloudObject:
        obj = self._objects.get(resource_id)
        if obj is None or obj.kind != kind:
            raise CloudAPIError("NotFound", f"{kind} {resource_id} does not exist")
        return obj

    def _new_id(self, kind: str, properties: dict[str, Any]) -> str:
        if kind == "subnet-group":
            return properties["group_name"]
        prefix = ID_PREFIXES.get(kind, kind)
        return f"{prefix}-{uuid.uuid4().hex[:17]}"

    def _check_references(self, kind: str, properties: dict[str, Any]) -> None:
        for value in _strings(properties):
            if _ID_PATTERN.match(value) and value not in self._objects:
                raise CloudAPIError("NotFound", f"{kind} references missing resource {value}")

        if kind == "database-instance":
            group = properties.get("db_subnet_group_name")
            if group is not None:
                obj = self._objects.get(group)
                if obj is None or obj.kind != "subnet-group":
                    raise CloudAPIError(
                        "DBSubnetGroupNotFoundFault", f"subnet group {group} does not exist"
                    )

    def _check_exclusive_name(self, kind: str, properties: dict[str, Any]) -> None:
        key = EXCLUSIVE_NAMES.get(kind)
        if key is None:
            return
        wanted = properties.get(key)
        for obj in self._objects.values():
            if obj.kind == kind and obj.properties.get(key) == wanted:
                raise CloudAPIError(
                    "AlreadyExists", f"{kind} named '{wanted}' already exists ({obj.resource_id})"
                )

    def _validate(self, kind: str, properties: dict[str, Any]) -> None:
        if kind == "database-instance":
            if not properties.get("password"):
                raise CloudAPIError("InvalidParameterValue", "master password is required")
        if kind == "subnet-group" and not properties.get("subnet_ids"):
            raise CloudAPIError("InvalidParameterValue", "subnet group needs at least one subnet")

    def _storable(self, properties: dict[str, Any]) -> dict[str, Any]:
        return {
            key: value for key, value in properties.items()
            if key not in WRITE_ONLY_PROPERTIES
        }

    def _arn(self, service: str, path: str) -> str:
        return f"arn:aws:{service}:{self.region}:{ACCOUNT_ID}:{path}"

    def _outputs(
        self,
        kind: str,
        resource_id: str,
        name: str,
        properties: dict[str, Any],
        previous: dict[str, Any] | None,
    ) -> dict[str, Any]:
        outputs: dict[str, Any] = {"id": resource_id}

        if kind == "network":
            outputs["arn"] = self._arn("ec2", f"vpc/{resource_id}")
            outputs["cidr_block"] = properties.get("cidr_block")
        elif kind == "subnet":
            outputs["arn"] = self._arn("ec2", f"subnet/{resource_id}")
            outputs["cidr_block"] = properties.get("cidr_block")
            outputs["availability_zone"] = properties.get("availability_zone") or f"{self.region}a"
        elif kind in ("internet-gateway", "route-table"):
            outputs["arn"] = self._arn("ec2", f"{ID_PREFIXES[kind]}/{resource_id}")
        elif kind == "security-group":
            outputs["arn"] = self._arn("ec2", f"security-group/{resource_id}")
            outputs["name"] = (
                properties.get("group_name")
                or (previous or {}).get("name")
                or f"{name}-{uuid.uuid4().hex[:8]}"
            )
        elif kind == "subnet-group":
            outputs["arn"] = self._arn("rds", f"subgrp:{resource_id}")
            outputs["name"] = resource_id
        elif kind == "database-instance":
            identifier = properties["identifier"]
            port = properties.get("port") or DEFAULT_PORTS.get(properties.get("engine", ""), 3306)
            if previous and previous.get("address"):
                address = previous["address"]
            else:
                address = f"{identifier}.{uuid.uuid4().hex[:12]}.{self.region}.rds.amazonaws.com"
            outputs["arn"] = self._arn("rds", f"db:{identifier}")
            outputs["address"] = address
            outputs["port"] = port
            outputs["endpoint"] = f"{address}:{port}"
        elif kind not in ID_PREFIXES:
            outputs.update(self._storable(properties))
            outputs["id"] = resource_id

        return outputs

    def _load(self) -> None:
        if self.store_path is None or not self.store_path.exists():
            return
        data = json.loads(self.store_path.read_text(encoding="utf-8"))
        for raw in data.get("objects", []):
            obj = CloudObject.model_validate(raw)
            self._objects[obj.resource_id] = obj
        logger.debug(f"[simulated] loaded {len(self._objects)} objects from {self.store_path}")

    def _save(self) -> None:
        if self.store_path is None:
            return
        self.store_path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "region": self.region,
            "objects": [obj.model_dump(mode="json") for obj in self._objects.values()],
        }
        self.store_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
