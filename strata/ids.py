"""
Plan ID generation and resource ID validation utilities.
"""

import random
import re
import string
from datetime import datetime

_PLAN_ID_RE = re.compile(r"^p-\d{8}-\d{6}-[a-z0-9]{4}$")
_RESOURCE_ID_RE = re.compile(r"^[a-z][a-z0-9-]{0,62}$")


def new_plan_id() -> str:
    """
    Generate a plan ID of the form p-YYYYMMDD-hhmmss-xxxx.

    The timestamp is UTC; the suffix keeps plans computed in the same second
    apart.
    """
    stamp = datetime.utcnow().strftime("%Y%m%d-%H%M%S")
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=4))
    return f"p-{stamp}-{suffix}"


def is_valid_plan_id(plan_id: str) -> bool:
    return isinstance(plan_id, str) and bool(_PLAN_ID_RE.match(plan_id))


def is_valid_resource_id(resource_id: str) -> bool:
    """
    Check that a resource ID can be used as a provider-side name.

    Resource IDs end up as EKS cluster names, RDS identifiers and Kubernetes
    object names, so they are restricted to lowercase DNS-label characters.

    Args:
        resource_id: ID to validate

    Returns:
        bool: True if the ID is a lowercase DNS label
    """
    if not isinstance(resource_id, str) or resource_id.endswith("-"):
        return False
    return bool(_RESOURCE_ID_RE.match(resource_id))
