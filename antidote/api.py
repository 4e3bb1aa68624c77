"""
Typed call surface for the Antidote backend endpoints.

Payloads are returned as plain JSON structures; turning them into domain
records is left to the caller.
"""

from typing import Any

from antidote.services.client import ApiClient
from antidote.services.errors import BadResponseError

JsonDict = dict[str, Any]


def _as_list(data: Any, strict: bool = False) -> list[JsonDict]:
    """Normalize a list payload: null becomes [], non-dict items become {}."""
    if data is None:
        return []
    if not isinstance(data, list):
        if strict:
            raise BadResponseError(500, "Invalid response format: expected array")
        return []
    return [dict(item) if isinstance(item, dict) else {} for item in data]


def _as_dict(data: Any) -> JsonDict:
    return dict(data) if isinstance(data, dict) else {}


class AntidoteApi:
    """
    One method per backend endpoint.

    Usage:
        api = AntidoteApi(client)
        top = await api.get_top_tracks(time_range="short_term")
    """

    def __init__(self, client: ApiClient):
        self.client = client

    # Playlist analysis

    async def analyze_playlist(self, url: str) -> JsonDict:
        return _as_dict(await self.client.post("/api/analyze", {"url": url}))

    async def battle_playlists(self, url1: str, url2: str) -> JsonDict:
        return _as_dict(
            await self.client.post("/api/battle", {"url1": url1, "url2": url2})
        )

    async def get_history(self) -> list[JsonDict]:
        return _as_list(await self.client.get("/api/history"))

    async def get_stats(self) -> JsonDict:
        return _as_dict(await self.client.get("/api/stats"))

    # Recommendations

    async def get_recommendations(
        self,
        type: str | None = None,
        playlist_id: str | None = None,
        seed_tracks: str | None = None,
        seed_genres: str | None = None,
        seed_artists: str | None = None,
    ) -> list[JsonDict]:
        data = await self.client.get(
            "/api/recommendations",
            params={
                "type": type,
                "playlistId": playlist_id,
                "seed_tracks": seed_tracks,
                "seed_genres": seed_genres,
                "seed_artists": seed_artists,
            },
        )
        return _as_list(data, strict=True)

    async def get_recommendation_strategies(self) -> list[JsonDict]:
        return _as_list(await self.client.get("/api/recommendations/strategies"))

    # Spotify listening data

    async def get_top_tracks(self, time_range: str = "medium_term") -> JsonDict:
        return _as_dict(
            await self.client.get(
                "/api/user/top-tracks", params={"time_range": time_range}
            )
        )

    async def get_top_artists(self, time_range: str = "medium_term") -> JsonDict:
        return _as_dict(
            await self.client.get(
                "/api/user/top-artists", params={"time_range": time_range}
            )
        )

    async def get_recently_played(self, limit: int = 50) -> JsonDict:
        return _as_dict(
            await self.client.get("/api/user/recently-played", params={"limit": limit})
        )

    async def get_saved_tracks(self, limit: int = 50, offset: int = 0) -> JsonDict:
        return _as_dict(
            await self.client.get(
                "/api/user/saved-tracks", params={"limit": limit, "offset": offset}
            )
        )

    async def get_saved_albums(self, limit: int = 50, offset: int = 0) -> JsonDict:
        return _as_dict(
            await self.client.get(
                "/api/user/saved-albums", params={"limit": limit, "offset": offset}
            )
        )

    async def get_taste_profile(self) -> JsonDict:
        return _as_dict(await self.client.get("/api/profile/taste"))

    async def get_listening_personality(self) -> JsonDict:
        return _as_dict(await self.client.get("/api/personality/listening"))

    async def get_discovery_timeline(self) -> JsonDict:
        return _as_dict(await self.client.get("/api/discovery/timeline"))

    # Mood

    async def analyze_mood(self, limit: int = 20) -> JsonDict:
        return _as_dict(await self.client.post("/api/mood/analyze", {"limit": limit}))

    async def generate_mood_playlist(
        self, mood: str | None = None, limit: int = 20
    ) -> JsonDict:
        return _as_dict(
            await self.client.post("/api/mood/playlist", {"mood": mood, "limit": limit})
        )

    # Playlists

    async def get_saved_playlists(self) -> list[JsonDict]:
        return _as_list(await self.client.get("/api/playlists"))

    async def get_spotify_playlists(self) -> list[JsonDict]:
        """User's Spotify playlists; entries without an id are dropped."""
        data = await self.client.get("/api/spotify/playlists")
        if not isinstance(data, list):
            return []
        return [dict(p) for p in data if isinstance(p, dict) and p.get("id") is not None]

    async def optimize_playlist(
        self, playlist_id: str | None = None, url: str | None = None
    ) -> JsonDict:
        return _as_dict(
            await self.client.post(
                "/api/playlists/optimize", {"playlistId": playlist_id, "url": url}
            )
        )

    async def generate_playlist(
        self,
        type: str | None = None,
        mood: str | None = None,
        activity: str | None = None,
        limit: int = 30,
    ) -> JsonDict:
        return _as_dict(
            await self.client.post(
                "/api/playlists/generate",
                {"type": type, "mood": mood, "activity": activity, "limit": limit},
            )
        )

    async def create_playlist(
        self,
        name: str,
        tracks: list[JsonDict],
        description: str | None = None,
        cover_url: str | None = None,
    ) -> JsonDict:
        return _as_dict(
            await self.client.post(
                "/api/playlists",
                {
                    "name": name,
                    "description": description,
                    "tracks": tracks,
                    "coverUrl": cover_url,
                },
            )
        )

    async def create_merged_playlist(
        self, name: str, track_ids: list[str], description: str | None = None
    ) -> JsonDict:
        body: JsonDict = {"name": name, "track_ids": track_ids}
        if description is not None:
            body["description"] = description
        return _as_dict(await self.client.post("/api/playlists/merge", body))

    async def save_playlist(
        self,
        url: str,
        name: str | None = None,
        description: str | None = None,
        cover_url: str | None = None,
    ) -> JsonDict:
        body: JsonDict = {"url": url}
        if name is not None:
            body["name"] = name
        if description is not None:
            body["description"] = description
        if cover_url is not None:
            body["coverUrl"] = cover_url
        return _as_dict(await self.client.post("/api/playlists/save", body))

    async def delete_playlist(self, playlist_id: str) -> None:
        await self.client.delete(f"/api/playlists/{playlist_id}")

    # Liked tracks

    async def get_liked_tracks(self) -> list[JsonDict]:
        return _as_list(await self.client.get("/api/liked-tracks"))

    async def save_liked_track(
        self,
        track_id: str,
        track_name: str,
        artist_name: str,
        album_art_url: str | None = None,
        preview_url: str | None = None,
    ) -> None:
        body: JsonDict = {
            "track_id": track_id,
            "track_name": track_name,
            "artist_name": artist_name,
        }
        if album_art_url is not None:
            body["album_art_url"] = album_art_url
        if preview_url is not None:
            body["preview_url"] = preview_url
        await self.client.post("/api/liked-tracks", body)

    async def delete_liked_track(self, track_id: str) -> None:
        await self.client.delete(f"/api/liked-tracks/{track_id}")
