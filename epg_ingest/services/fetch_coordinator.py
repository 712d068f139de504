"""
Ingestion Coordination

Tracks ingestion runs per playlist with generation tokens so a new refresh
supersedes a stale one instead of racing it.
"""
import logging
from dataclasses import dataclass


logger = logging.getLogger(__name__)


class IngestionSuperseded(Exception):
    """Raised inside a run whose token has been superseded by a newer run"""

    def __init__(self, playlist_id: str, generation: int):
        super().__init__(f"Ingestion run {generation} for playlist {playlist_id} was superseded")
        self.playlist_id = playlist_id
        self.generation = generation


@dataclass(slots=True, eq=False)
class RunToken:
    """Handle for one ingestion run; stale once a newer run begins."""
    coordinator: "IngestionCoordinator"
    playlist_id: str
    generation: int

    @property
    def is_stale(self) -> bool:
        return self.coordinator.current_generation(self.playlist_id) != self.generation

    def raise_if_stale(self) -> None:
        if self.is_stale:
            raise IngestionSuperseded(self.playlist_id, self.generation)


class IngestionCoordinator:
    """
    Coordinates ingestion runs across manual and scheduled refresh triggers.

    Each begin() bumps the playlist's generation; runs check their token at
    every suspension point and stop once a newer generation exists.
    """

    def __init__(self):
        self._generations: dict[str, int] = {}
        self._active: dict[str, int] = {}

    def begin(self, playlist_id: str) -> RunToken:
        """
        Start a new run, superseding any run in progress for the playlist.

        Returns:
            Token for the new run
        """
        generation = self._generations.get(playlist_id, 0) + 1
        self._generations[playlist_id] = generation
        if self.is_running(playlist_id):
            logger.info(
                "Superseding ingestion run %s for playlist %s",
                self._active[playlist_id],
                playlist_id,
            )
        self._active[playlist_id] = generation
        return RunToken(self, playlist_id, generation)

    def finish(self, token: RunToken) -> None:
        """Mark a run as finished (no-op for superseded runs)."""
        if self._active.get(token.playlist_id) == token.generation:
            del self._active[token.playlist_id]

    def cancel(self, playlist_id: str) -> None:
        """Invalidate the current run for a playlist without starting a new one."""
        self._generations[playlist_id] = self._generations.get(playlist_id, 0) + 1
        self._active.pop(playlist_id, None)

    def current_generation(self, playlist_id: str) -> int:
        return self._generations.get(playlist_id, 0)

    def is_running(self, playlist_id: str) -> bool:
        """
        Check if an ingestion run is currently in progress for a playlist.

        Returns:
            True if a run is active, False otherwise
        """
        return playlist_id in self._active


# Global singleton instance
_coordinator: IngestionCoordinator | None = None


def get_ingestion_coordinator() -> IngestionCoordinator:
    """
    Get or create the global ingestion coordinator singleton.

    Returns:
        The global IngestionCoordinator instance
    """
    global _coordinator
    if _coordinator is None:
        _coordinator = IngestionCoordinator()
    return _coordinator


def reset_ingestion_coordinator() -> None:
    """
    Reset the ingestion coordinator (mainly for testing).

    WARNING: Only use this in test environments!
    """
    global _coordinator
    _coordinator = None
