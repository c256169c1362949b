"""Exception taxonomy for Karaokio.

Stage failures carry the stage name and the underlying cause so the
orchestrator can record ``"<stage>: <ErrorName>: <cause>"`` on the song.
"""
from __future__ import annotations


class KaraokioError(Exception):
    """Base class for all Karaokio errors."""


class NotFound(KaraokioError):
    """Unknown song, user or cache key."""


class SongNotFound(NotFound):
    """Raised when a song does not exist in the status store."""

    def __init__(self, song_id: str):
        self.song_id = song_id
        super().__init__(f"Song {song_id} not found")


class UserNotFound(NotFound):
    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"User {user_id} not found")


class CacheEntryNotFound(NotFound):
    def __init__(self, fingerprint: str):
        self.fingerprint = fingerprint
        super().__init__(f"Cache entry {fingerprint} not found")


class InvalidTransition(KaraokioError):
    """Raised when a status change is not in the transition table."""

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Cannot move song from {current} to {target}")


class StageFailure(KaraokioError):
    """A pipeline stage could not produce its output."""

    def __init__(self, stage: str, cause: str):
        self.stage = stage
        self.cause = cause
        super().__init__(f"{stage}: {type(self).__name__}: {cause}")

    @property
    def record(self) -> str:
        """Error string persisted on the song."""
        return str(self)


class AcquisitionFailed(StageFailure):
    def __init__(self, cause: str):
        super().__init__("acquire", cause)


class SeparationFailed(StageFailure):
    def __init__(self, cause: str):
        super().__init__("separate", cause)


class LyricsSyncFailed(StageFailure):
    """Soft failure: logged, never fails the run."""

    def __init__(self, cause: str):
        super().__init__("sync_lyrics", cause)


class ComposeFailed(StageFailure):
    def __init__(self, cause: str):
        super().__init__("compose", cause)


class StageTimeout(KaraokioError):
    """A collaborator call exceeded its deadline and was abandoned."""

    def __init__(self, stage: str, seconds: float):
        self.stage = stage
        self.seconds = seconds
        super().__init__(f"{stage} timed out after {seconds:g}s")


class CacheIntegrityError(KaraokioError):
    """A cache entry references missing files.  Handled inside the cache."""

    def __init__(self, fingerprint: str, missing: list[str]):
        self.fingerprint = fingerprint
        self.missing = missing
        super().__init__(
            f"Cache entry {fingerprint} is missing mandatory files: {', '.join(missing)}"
        )


class Cancelled(KaraokioError):
    """The job run was cancelled by an explicit ``cancel`` call."""

    def __init__(self, song_id: str):
        self.song_id = song_id
        super().__init__("Cancelled")
