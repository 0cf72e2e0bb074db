"""
Configuration loaded from environment variables.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping, Optional, Union

from .models import ResourceKind

ORPHAN_POLICIES = ("error", "cascade")

# Per-call budgets for kinds whose adapters block on AWS waiters. An EKS
# create can wait on cluster_active twice and then on nodegroup_active
# (up to 80 polls of 30s); an RDS create waits on db_instance_available
# (up to 60 polls of 30s).
DEFAULT_KIND_TIMEOUTS: Dict[str, float] = {
    ResourceKind.CLUSTER.value: 4200.0,
    ResourceKind.DATABASE.value: 2400.0,
}


def get_strata_home() -> Path:
    """
    Get the Strata home directory.

    Returns:
        Path: Strata home directory
    """
    strata_home = os.environ.get("STRATA_HOME", ".strata")
    return Path(strata_home).resolve()


@dataclass(frozen=True)
class ProviderConfig:
    """
    Provider context passed explicitly to every adapter call.

    Nothing in the adapters reads region or cluster context from process
    globals; everything they need arrives through this object.
    """
    region: str = "us-west-2"
    profile: Optional[str] = None
    endpoint_url: Optional[str] = None
    kube_context: Optional[str] = None

    @classmethod
    def from_env(cls) -> "ProviderConfig":
        return cls(
            region=os.environ.get("STRATA_REGION") or os.environ.get("AWS_REGION") or "us-west-2",
            profile=os.environ.get("AWS_PROFILE") or None,
            endpoint_url=os.environ.get("STRATA_ENDPOINT_URL") or None,
            kube_context=os.environ.get("STRATA_KUBE_CONTEXT") or None,
        )


@dataclass(frozen=True)
class Settings:
    """
    Reconciler tuning knobs.

    adapter_timeout bounds every provider call; kind_timeouts overrides it
    for individual kinds, keyed by kind name.
    """
    home: Path = Path(".strata")
    adapter_timeout: float = 300.0
    drift_interval: float = 60.0
    scale_interval: float = 15.0
    scale_workers: int = 4
    orphan_policy: str = "error"
    kind_timeouts: Mapping[str, float] = field(default_factory=lambda: dict(DEFAULT_KIND_TIMEOUTS))

    def __post_init__(self):
        if self.orphan_policy not in ORPHAN_POLICIES:
            raise ValueError(
                f"Invalid orphan policy: {self.orphan_policy}. Expected one of {', '.join(ORPHAN_POLICIES)}"
            )
        if self.adapter_timeout <= 0:
            raise ValueError("adapter_timeout must be positive")
        if self.scale_workers < 1:
            raise ValueError("scale_workers must be at least 1")
        for kind, timeout in self.kind_timeouts.items():
            ResourceKind(kind)
            if timeout <= 0:
                raise ValueError(f"Timeout for {kind} must be positive")

    def timeout_for(self, kind: Union[ResourceKind, str]) -> float:
        """Seconds a single provider call for this kind may take."""
        return self.kind_timeouts.get(ResourceKind(kind).value, self.adapter_timeout)

    @classmethod
    def from_env(cls) -> "Settings":
        kind_timeouts = dict(DEFAULT_KIND_TIMEOUTS)
        for kind in ResourceKind:
            value = os.environ.get(f"STRATA_TIMEOUT_{kind.name}")
            if value:
                kind_timeouts[kind.value] = float(value)

        return cls(
            home=get_strata_home(),
            adapter_timeout=float(os.environ.get("STRATA_ADAPTER_TIMEOUT", "300")),
            drift_interval=float(os.environ.get("STRATA_DRIFT_INTERVAL", "60")),
            scale_interval=float(os.environ.get("STRATA_SCALE_INTERVAL", "15")),
            scale_workers=int(os.environ.get("STRATA_SCALE_WORKERS", "4")),
            orphan_policy=os.environ.get("STRATA_ORPHAN_POLICY", "error"),
            kind_timeouts=kind_timeouts,
        )
