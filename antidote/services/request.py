"""
Request and response value types, and canonical key derivation.
"""

from dataclasses import dataclass, field, replace
from typing import Any, Iterable, Mapping
from urllib.parse import parse_qsl, urlencode

HTTP_METHODS = ("GET", "POST", "PUT", "DELETE")

QueryParams = Mapping[str, Any] | Iterable[tuple[str, Any]]


def _normalize_params(params: QueryParams | None) -> tuple[tuple[str, str], ...]:
    if not params:
        return ()
    items = params.items() if isinstance(params, Mapping) else params
    pairs: list[tuple[str, str]] = []
    for name, value in items:
        if value is None:
            continue
        if isinstance(value, (list, tuple)):
            pairs.extend((str(name), _stringify(v)) for v in value if v is not None)
        else:
            pairs.append((str(name), _stringify(value)))
    return tuple(pairs)


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


@dataclass(frozen=True)
class RequestDescriptor:
    """
    One logical API call. Immutable; use ``with_headers`` to derive a copy.

    ``params`` keeps the caller's order; ``canonical_key`` sorts it.
    """

    method: str
    path: str
    params: tuple[tuple[str, str], ...] = ()
    headers: tuple[tuple[str, str], ...] = ()
    json: Any = field(default=None, compare=False)

    @classmethod
    def build(
        cls,
        method: str,
        path: str,
        params: QueryParams | None = None,
        headers: Mapping[str, str] | None = None,
        json: Any = None,
    ) -> "RequestDescriptor":
        method = method.upper()
        if method not in HTTP_METHODS:
            raise ValueError(f"Unsupported HTTP method: {method}")

        # A query written inline in the path is merged into the parameters
        path, _, query = path.partition("?")
        inline = parse_qsl(query, keep_blank_values=True)
        return cls(
            method=method,
            path=path,
            params=tuple(inline) + _normalize_params(params),
            headers=tuple((headers or {}).items()),
            json=json,
        )

    @property
    def header_map(self) -> dict[str, str]:
        return dict(self.headers)

    def with_headers(self, updates: Mapping[str, str]) -> "RequestDescriptor":
        """Clone with the given headers added or replaced."""
        merged = self.header_map
        merged.update(updates)
        return replace(self, headers=tuple(merged.items()))

    def __repr__(self) -> str:
        # Headers carry credentials and are left out.
        return f"RequestDescriptor({self.method} {self.path}, params={self.params})"


@dataclass
class Response:
    """A settled, successful response."""

    status_code: int
    data: Any = None
    headers: dict[str, str] = field(default_factory=dict)
    from_cache: bool = False

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


def canonical_key(request: RequestDescriptor) -> str:
    """
    Deterministic identity of a request for caching and deduplication.

    Only method, path and query parameters contribute. Parameters are sorted
    by (name, value), so their order does not matter; the body never counts.
    """
    query = urlencode(sorted(request.params))
    if query:
        return f"{request.method} {request.path}?{query}"
    return f"{request.method} {request.path}"
