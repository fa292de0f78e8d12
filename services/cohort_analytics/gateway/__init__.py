"""Gateways over the clinical data store."""

from services.cohort_analytics.gateway.interfaces import QueryGateway
from services.cohort_analytics.gateway.memory import FixtureLoadError, InMemoryGateway
from services.cohort_analytics.gateway.sql import SqlAlchemyGateway

__all__ = [
    "FixtureLoadError",
    "InMemoryGateway",
    "QueryGateway",
    "SqlAlchemyGateway",
]
