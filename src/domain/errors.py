"""Terrain pipeline exceptions."""


class TerrainConfigError(ValueError):
    """Degenerate or inconsistent grid configuration."""


class ElevationFetchError(RuntimeError):
    """A single elevation request attempt failed."""

    def __init__(self, message: str, *, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


class MeshBuildError(RuntimeError):
    """The mesh could not be built from the supplied points."""
