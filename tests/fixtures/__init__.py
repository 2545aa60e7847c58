"""
Test fixtures for the podcast inventory engine.

This module provides reusable row factories for integration tests.
"""

from .factories import (
    CampaignFactory,
    EpisodeFactory,
    OrderFactory,
    ReservationFactory,
    ShowFactory,
    SpotFactory,
    TenantFactory,
    UserFactory,
)

__all__ = [
    "CampaignFactory",
    "EpisodeFactory",
    "OrderFactory",
    "ReservationFactory",
    "ShowFactory",
    "SpotFactory",
    "TenantFactory",
    "UserFactory",
]
