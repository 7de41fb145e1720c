"""Error taxonomy for tile serving and elevation queries.

Every failure the data plane can report is a subclass of
``TileServerError`` carrying the HTTP status it maps to. The application
registers a single exception handler that renders these as
``{"detail": message}``, the same body FastAPI uses for ``HTTPException``.

Missing tiles are deliberately absent from this module: a tile that does not
exist in its archive is a regular result (``None``), not an error.

Example:
    Raise a client-facing error from a service:
        >>> from tileserver.core import errors
        >>> raise errors.OutOfBoundsError()

    Translate it in a route (done globally by ``main.create_app``):
        >>> try:
        ...     ...
        ... except errors.TileServerError as exc:
        ...     print(exc.status_code, exc.detail)
"""

from __future__ import annotations


class TileServerError(Exception):
    """Base class for errors surfaced to API clients.

    Attributes:
        status_code: HTTP status code the error is rendered with.
        default_detail: Message used when none is given.
    """

    status_code: int = 500
    default_detail: str = "Internal error"

    def __init__(self, detail: str | None = None) -> None:
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class SourceNotFoundError(TileServerError):
    """The requested source id is not registered."""

    status_code = 404
    default_detail = "Source not found"


class InvalidRequestError(TileServerError):
    """Malformed request: bad format, bad point, bad coordinate syntax."""

    status_code = 400
    default_detail = "Invalid request"


class OutOfBoundsError(TileServerError):
    """Syntactically valid tile address outside the source's declared range."""

    status_code = 404
    default_detail = "Out of bounds"


class UnsupportedSourceError(TileServerError):
    """Elevation query against a source that cannot serve terrain."""

    status_code = 400
    default_detail = "Source does not support elevation queries"


class DecodeFailureError(TileServerError):
    """Tile bytes returned by an archive could not be decoded."""

    status_code = 500
    default_detail = "Tile data could not be decoded"


class UpstreamIOError(TileServerError):
    """Archive read failed for a reason other than the tile being absent."""

    status_code = 502
    default_detail = "Tile archive read failed"


class UpstreamTimeoutError(UpstreamIOError):
    """Archive read exceeded the configured fetch timeout."""

    status_code = 504
    default_detail = "Tile archive read timed out"


class SourceConfigError(RuntimeError):
    """A configured data source could not be registered.

    Raised while opening sources at startup or reload. The offending source
    is rejected; it never reaches a request.
    """
