"""
Per-kind parameter schemas.

Each resource kind has a pydantic model; the graph builder validates the raw
parameter mapping of every ResourceSpec against the model for its kind, so a
malformed desired state is rejected before any provider is called. Fields
listed in REFERENCE_FIELDS name other resources and become dependency edges.
"""

import ipaddress
from typing import Any, Dict, List, Literal, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import InvalidParameters
from .models import ResourceKind, ResourceSpec


class ResourceParameters(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    def canonical(self) -> Dict[str, Any]:
        """Parameters with defaults filled in, as recorded and diffed."""
        return self.model_dump(mode="json")


class NetworkParameters(ResourceParameters):
    cidr_block: str
    enable_dns: bool = True

    @field_validator("cidr_block")
    @classmethod
    def _valid_cidr(cls, value: str) -> str:
        try:
            return str(ipaddress.ip_network(value, strict=True))
        except ValueError as e:
            raise ValueError(f"invalid CIDR block {value!r}: {e}")


class ClusterParameters(ResourceParameters):
    version: str = "1.29"
    node_count: int = Field(default=2, ge=1)
    node_type: str = "t3.medium"
    role_arn: Optional[str] = None
    node_role_arn: Optional[str] = None
    subnet_ids: List[str] = Field(default_factory=list)
    network: Optional[str] = None


class DatabaseParameters(ResourceParameters):
    engine: Literal["postgres", "mysql"] = "postgres"
    engine_version: str
    instance_class: str = "db.t3.micro"
    storage_gb: int = Field(default=20, ge=20)
    master_username: str = "strata"
    subnet_group: Optional[str] = None
    network: Optional[str] = None


class WorkloadParameters(ResourceParameters):
    image: str = Field(min_length=1)
    replicas: int = Field(default=1, ge=0)
    container_port: int = Field(default=8080, ge=1, le=65535)
    namespace: str = "default"
    env: Dict[str, str] = Field(default_factory=dict)
    cluster: Optional[str] = None
    database: Optional[str] = None


class ServiceExposureParameters(ResourceParameters):
    port: int = Field(ge=1, le=65535)
    target_port: Optional[int] = Field(default=None, ge=1, le=65535)
    exposure: Literal["ClusterIP", "NodePort", "LoadBalancer"] = "LoadBalancer"
    namespace: str = "default"
    workload: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _default_target_port(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("target_port") is None and "port" in data:
            data = {**data, "target_port": data["port"]}
        return data


PARAMETER_MODELS: Dict[ResourceKind, Type[ResourceParameters]] = {
    ResourceKind.NETWORK: NetworkParameters,
    ResourceKind.CLUSTER: ClusterParameters,
    ResourceKind.DATABASE: DatabaseParameters,
    ResourceKind.WORKLOAD: WorkloadParameters,
    ResourceKind.SERVICE_EXPOSURE: ServiceExposureParameters,
}

# field name -> kind of resource the field must point at
REFERENCE_FIELDS: Dict[str, ResourceKind] = {
    "network": ResourceKind.NETWORK,
    "cluster": ResourceKind.CLUSTER,
    "database": ResourceKind.DATABASE,
    "workload": ResourceKind.WORKLOAD,
}


def validate_parameters(spec: ResourceSpec) -> ResourceParameters:
    """
    Validate a spec's parameters against the schema for its kind.

    Raises:
        InvalidParameters: If the parameters do not match the schema
    """
    model = PARAMETER_MODELS.get(spec.kind)
    if model is None:
        raise InvalidParameters(spec.id, f"unknown kind {spec.kind}")

    try:
        return model.model_validate(spec.parameters or {})
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}" for err in e.errors()
        )
        raise InvalidParameters(spec.id, problems) from e


def references(params: ResourceParameters) -> Dict[str, str]:
    """Return {field: referenced id} for every reference field that is set."""
    refs = {}
    for name in REFERENCE_FIELDS:
        value = getattr(params, name, None)
        if value:
            refs[name] = value
    return refs
