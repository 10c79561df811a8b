"""
EasyBroker integration package.

Exposes the API client and the paginated aggregator so the web layer and the
catalog sync can drain listing endpoints without knowing how each one pages.
"""

from .client import EasyBrokerClient, EasyBrokerConfigError, EasyBrokerError, EasyBrokerRequestError
from .pagination import AggregationResult, ErrorPolicy, StopReason, aggregate_pages

__all__ = [
    "AggregationResult",
    "EasyBrokerClient",
    "EasyBrokerConfigError",
    "EasyBrokerError",
    "EasyBrokerRequestError",
    "ErrorPolicy",
    "StopReason",
    "aggregate_pages",
]
