"""Merge strategies that turn worker branches into deliverables."""

from __future__ import annotations

from scribeswarm.integration.base import IntegrationContext, Integrator
from scribeswarm.integration.federated import FederatedIntegrator
from scribeswarm.integration.single_pr import SinglePRIntegrator
from scribeswarm.protocol.models import IntegrationReport, MergeStrategy


def get_integrator(strategy: MergeStrategy | str) -> Integrator:
    if MergeStrategy(strategy) == MergeStrategy.FEDERATED:
        return FederatedIntegrator()
    return SinglePRIntegrator()


def integrate(strategy: MergeStrategy | str, ctx: IntegrationContext) -> IntegrationReport:
    return get_integrator(strategy).integrate(ctx)
