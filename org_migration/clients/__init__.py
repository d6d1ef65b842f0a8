"""Clients for org data APIs."""

from .base import RemoteDataClient, RemoteApiError, QueryResult, SaveResult
from .connection import OrgConnection
from .rate_limit import RateLimitGate
from .rest_client import RestDataClient

__all__ = [
    "RemoteDataClient",
    "RemoteApiError",
    "QueryResult",
    "SaveResult",
    "OrgConnection",
    "RateLimitGate",
    "RestDataClient",
]
