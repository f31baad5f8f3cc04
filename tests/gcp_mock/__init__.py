"""In-memory fakes for integration testing.

Provides fakes for the two external APIs the reconciler talks to, so the
full flow can be exercised without GCP or a Kubernetes API server.

Key Features:
- FakeCloud: Compute API with call recording and error injection
- FakeStatusWriter: Infrastructure objects with resourceVersion conflicts
- FakeLegacyTool / FakeLegacyDelegate: the legacy Terraformer backend
- make_infrastructure / make_cluster: object builders

Usage:
    from gcp_mock import FakeCloud, FakeStatusWriter, make_infrastructure

    cloud = FakeCloud()
    writer = FakeStatusWriter(make_infrastructure())
    actuator = Actuator(config, cloud, writer, FakeLegacyTool())
    await actuator.reconcile(writer.get_infrastructure(ns, name), cluster)

    assert cloud.mutation_count() > 0
"""

from .cloud import FakeCloud
from .kube import (
    FakeInfrastructureSource,
    FakeLegacyDelegate,
    FakeLegacyTool,
    FakeStatusWriter,
    make_cluster,
    make_infrastructure,
)

__all__ = [
    "FakeCloud",
    "FakeInfrastructureSource",
    "FakeLegacyDelegate",
    "FakeLegacyTool",
    "FakeStatusWriter",
    "make_cluster",
    "make_infrastructure",
]
