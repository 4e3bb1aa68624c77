"""
Endpoint classification: which credentials a backend path needs.
"""

from enum import Enum


class AuthRequirement(str, Enum):
    NONE = "NONE"  # Public, no credentials attached
    PRIMARY = "PRIMARY"  # Backend session bearer token
    SECONDARY = "SECONDARY"  # Bearer token plus the Spotify token


# Endpoints that proxy Spotify and need the user's Spotify token
SPOTIFY_ENDPOINTS = (
    "/api/analyze",
    "/api/battle",
    "/api/recommendations",
    "/api/playlists",
    "/api/spotify/playlists",
    "/api/user/top-tracks",
    "/api/user/top-artists",
    "/api/user/recently-played",
    "/api/user/saved-tracks",
    "/api/user/saved-albums",
    "/api/profile/taste",
    "/api/mood/analyze",
    "/api/mood/playlist",
    "/api/personality/listening",
    "/api/playlists/optimize",
    "/api/playlists/generate",
    "/api/discovery/timeline",
)

PUBLIC_ENDPOINTS = (
    "/health",
    "/api/health",
)


def _matches(path: str, prefix: str) -> bool:
    return path == prefix or path.startswith(prefix + "/")


class EndpointClassifier:
    """Maps a request path to an AuthRequirement by path-segment prefix."""

    def __init__(
        self,
        secondary_prefixes: tuple[str, ...] = SPOTIFY_ENDPOINTS,
        public_prefixes: tuple[str, ...] = PUBLIC_ENDPOINTS,
    ):
        self.secondary_prefixes = secondary_prefixes
        self.public_prefixes = public_prefixes

    def classify(self, path: str) -> AuthRequirement:
        path = path.split("?", 1)[0]
        if any(_matches(path, prefix) for prefix in self.public_prefixes):
            return AuthRequirement.NONE
        if any(_matches(path, prefix) for prefix in self.secondary_prefixes):
            return AuthRequirement.SECONDARY
        return AuthRequirement.PRIMARY

