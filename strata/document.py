"""
Desired-state documents.

A document is an already-parsed mapping:

    {"resources": [{"id": "net1", "kind": "Network",
                    "parameters": {...}, "dependsOn": ["..."]}]}

"depends_on" is accepted as an alias of "dependsOn". JSON files can be
loaded directly with load_document().
"""

import json
from pathlib import Path
from typing import Any, Dict, List

from .errors import InvalidParameters
from .models import ResourceKind, ResourceSpec

_KINDS = {kind.value: kind for kind in ResourceKind}


def specs_from_document(document: Dict[str, Any]) -> List[ResourceSpec]:
    """
    Convert a parsed desired-state document into ResourceSpecs.

    Raises:
        ValueError: If the document is not shaped like a resource list
        InvalidParameters: If an entry has an unknown kind or bad fields
    """
    if not isinstance(document, dict) or not isinstance(document.get("resources"), list):
        raise ValueError("Desired-state document must contain a 'resources' list")

    specs = []
    for index, entry in enumerate(document["resources"]):
        if not isinstance(entry, dict) or not entry.get("id"):
            raise ValueError(f"Resource #{index} must be a mapping with an 'id'")
        resource_id = str(entry["id"])

        kind = _KINDS.get(entry.get("kind"))
        if kind is None:
            raise InvalidParameters(
                resource_id, f"unknown kind {entry.get('kind')!r}, expected one of {', '.join(_KINDS)}"
            )

        parameters = entry.get("parameters") or {}
        if not isinstance(parameters, dict):
            raise InvalidParameters(resource_id, "parameters must be a mapping")

        depends_on = entry.get("dependsOn", entry.get("depends_on")) or []
        if isinstance(depends_on, str) or not isinstance(depends_on, list):
            raise InvalidParameters(resource_id, "dependsOn must be a list of resource ids")

        specs.append(ResourceSpec(
            id=resource_id,
            kind=kind,
            parameters=dict(parameters),
            depends_on=[str(dep) for dep in depends_on],
        ))

    return specs


def load_document(path: Path) -> List[ResourceSpec]:
    """Read a JSON desired-state document from disk."""
    with open(path, "r") as f:
        return specs_from_document(json.load(f))
