"""
Tagging utilities for consistent provider-side resource tagging.
"""

from datetime import datetime
from typing import Dict, List, Optional


def base_tags(resource_id: str, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """
    Generate base tags for a managed resource.

    Args:
        resource_id: Resource ID the provider object belongs to
        extra: Additional tags to include

    Returns:
        Dictionary of tags to apply to resources
    """
    tags = {
        "project": "strata",
        "resource_id": resource_id,
        "created_at": datetime.utcnow().isoformat() + "Z"
    }

    # Add extra tags if provided
    if extra:
        tags.update(extra)

    return tags


def to_aws_tags(tags: Dict[str, str]) -> List[Dict[str, str]]:
    """Convert a tag dict to the [{Key, Value}] shape EC2 and RDS expect."""
    return [{"Key": key, "Value": value} for key, value in sorted(tags.items())]


def from_aws_tags(tag_list: Optional[List[Dict[str, str]]]) -> Dict[str, str]:
    return {tag["Key"]: tag["Value"] for tag in (tag_list or [])}


def get_resource_id_from_tags(tags: Dict[str, str]) -> Optional[str]:
    """
    Extract the managed resource ID from provider tags.
    """
    return tags.get("resource_id")


def is_strata_resource(tags: Dict[str, str]) -> bool:
    """
    Check if a provider object is managed by Strata based on its tags.
    """
    return tags.get("project") == "strata"
