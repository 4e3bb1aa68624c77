"""
Request pipeline for the Antidote backend API.

Provides:
- ApiClient: facade running every call through the stage chain
- PendingRequestRegistry: in-flight GET deduplication
- ResponseCache: persistent TTL cache of GET responses
- TokenStore / TokenRefreshAgent: bearer and Spotify credentials
- RetryPolicy: bounded retry of transient failures
"""

from antidote.services.errors import (
    ApiError,
    BadResponseError,
    ConnectionFailureError,
    ErrorKind,
    RequestCancelledError,
    RequestTimeoutError,
    UnknownApiError,
    classify_exception,
)
from antidote.services.request import RequestDescriptor, Response, canonical_key
from antidote.services.endpoints import (
    AuthRequirement,
    EndpointClassifier,
)
from antidote.services.retry import RetryDecision, RetryPolicy
from antidote.services.deduplicator import PendingRequestRegistry
from antidote.services.cache import CacheEntry, ResponseCache
from antidote.services.tokens import TokenRecord, TokenStore
from antidote.services.refresh import IdentitySession, SessionToken, TokenRefreshAgent
from antidote.services.transport import HttpxTransport, Transport
from antidote.services.client import ApiClient, create_api_client

__all__ = [
    # Errors
    "ApiError",
    "BadResponseError",
    "ConnectionFailureError",
    "ErrorKind",
    "RequestCancelledError",
    "RequestTimeoutError",
    "UnknownApiError",
    "classify_exception",
    # Requests
    "RequestDescriptor",
    "Response",
    "canonical_key",
    # Endpoint classification
    "AuthRequirement",
    "EndpointClassifier",
    # Retry
    "RetryDecision",
    "RetryPolicy",
    # Deduplication
    "PendingRequestRegistry",
    # Cache
    "CacheEntry",
    "ResponseCache",
    # Tokens
    "TokenRecord",
    "TokenStore",
    "IdentitySession",
    "SessionToken",
    "TokenRefreshAgent",
    # Transport
    "HttpxTransport",
    "Transport",
    # Client
    "ApiClient",
    "create_api_client",
]
