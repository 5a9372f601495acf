#!/usr/bin/env python3
"""Backend tags for Subnets owned by a SubnetSet."""

from typing import List

from backend.client import (
    TAG_SCOPE_CLUSTER,
    TAG_SCOPE_NAMESPACE,
    TAG_SCOPE_NAMESPACE_UID,
    TAG_SCOPE_SUBNETSET_NAME,
    TAG_SCOPE_SUBNETSET_UID,
    TAG_SCOPE_VERSION,
    Tag,
)
from config import CLUSTER_NAME, TAGS_COUNT_MAX, VERSION
from errors import ControlPlaneError, ErrorKind, TagOverflowError


def build_subnetset_tags(
    subnetset, namespace, cluster: str = CLUSTER_NAME, max_tags: int = TAGS_COUNT_MAX
) -> List[Tag]:
    """
    Ownership tags plus one tag per namespace label.

    Raises TagOverflowError when the result would exceed max_tags.
    """
    tags = [
        Tag(TAG_SCOPE_CLUSTER, cluster),
        Tag(TAG_SCOPE_VERSION, VERSION),
        Tag(TAG_SCOPE_NAMESPACE, subnetset.namespace),
        Tag(TAG_SCOPE_NAMESPACE_UID, namespace.uid),
        Tag(TAG_SCOPE_SUBNETSET_NAME, subnetset.name),
        Tag(TAG_SCOPE_SUBNETSET_UID, subnetset.uid),
    ]
    for key, value in sorted((namespace.labels or {}).items()):
        tags.append(Tag(key, value))

    tags = [t for t in tags if t.value]
    if not tags:
        raise ControlPlaneError(
            f"failed to generate tags for SubnetSet {subnetset.namespace}/{subnetset.name}",
            ErrorKind.TERMINAL,
        )
    if len(tags) > max_tags:
        raise TagOverflowError(len(tags), max_tags)
    return tags
