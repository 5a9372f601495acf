"""Tests for backend tag generation and error classification"""

from types import SimpleNamespace

import pytest

from backend.client import (
    TAG_SCOPE_CLUSTER,
    TAG_SCOPE_NAMESPACE_UID,
    TAG_SCOPE_SUBNETSET_UID,
    Tag,
)
from errors import (
    AggregateError,
    BackendError,
    ControlPlaneError,
    ErrorKind,
    InvalidSubnetSizeError,
    StalePortError,
    TagOverflowError,
    aggregate,
    is_retryable,
)
from reconciler.tags import build_subnetset_tags


def make_subnetset():
    return SimpleNamespace(namespace="ns1", name="web", uid="ss-uid")


def test_tags_carry_ownership_and_namespace_labels():
    ns = SimpleNamespace(uid="ns-uid", labels={"zone": "a", "env": "prod"})

    tags = build_subnetset_tags(make_subnetset(), ns, cluster="cluster-1")

    assert Tag(TAG_SCOPE_CLUSTER, "cluster-1") in tags
    assert Tag(TAG_SCOPE_NAMESPACE_UID, "ns-uid") in tags
    assert Tag(TAG_SCOPE_SUBNETSET_UID, "ss-uid") in tags
    # Labels follow the ownership tags, sorted by key
    assert tags[-2:] == [Tag("env", "prod"), Tag("zone", "a")]


def test_tags_skip_empty_values():
    ns = SimpleNamespace(uid="ns-uid", labels={"empty": ""})

    tags = build_subnetset_tags(make_subnetset(), ns)

    assert all(t.scope != "empty" for t in tags)
    assert len(tags) == 6


def test_tag_overflow_is_terminal():
    ns = SimpleNamespace(uid="ns-uid", labels={f"label-{i}": "x" for i in range(3)})

    with pytest.raises(TagOverflowError) as exc:
        build_subnetset_tags(make_subnetset(), ns, max_tags=8)

    assert exc.value.kind == ErrorKind.TERMINAL
    assert not is_retryable(exc.value)


def test_tags_at_limit_are_accepted():
    ns = SimpleNamespace(uid="ns-uid", labels={f"label-{i}": "x" for i in range(2)})
    assert len(build_subnetset_tags(make_subnetset(), ns, max_tags=8)) == 8


def test_aggregate_collapses():
    assert aggregate([]) is None
    single = BackendError("boom")
    assert aggregate([single]) is single

    combined = aggregate([BackendError("a"), InvalidSubnetSizeError(20, 16)])
    assert isinstance(combined, AggregateError)
    assert "a; ipv4SubnetSize 20" in str(combined)
    assert combined.kind == ErrorKind.TRANSIENT


def test_aggregate_of_terminal_errors_stays_terminal():
    combined = AggregateError([InvalidSubnetSizeError(20, 16), TagOverflowError(30, 26)])
    assert combined.kind == ErrorKind.TERMINAL
    assert not is_retryable(combined)


def test_retry_classification():
    assert is_retryable(BackendError("unreachable"))
    assert is_retryable(StalePortError("ports attached"))
    assert is_retryable(ValueError("unexpected"))
    assert not is_retryable(ControlPlaneError("bad spec", ErrorKind.TERMINAL))
    assert not is_retryable(None)
