"""Tests for the song lifecycle vocabulary and error records."""
from __future__ import annotations

import pytest

from karaokio.contracts.song_types import (
    ArtifactSet,
    SongStatus,
    Stage,
    check_transition,
)
from karaokio.errors import AcquisitionFailed, InvalidTransition, StageTimeout


class TestTransitions:
    @pytest.mark.parametrize(
        "current,target",
        [
            (SongStatus.QUEUED, SongStatus.READY),
            (SongStatus.QUEUED, SongStatus.ACQUIRING),
            (SongStatus.ACQUIRING, SongStatus.SEPARATING),
            (SongStatus.SYNCING, SongStatus.COMPOSING),
            (SongStatus.COMPOSING, SongStatus.FAILED),
            (SongStatus.READY, SongStatus.PLAYING),
            (SongStatus.PLAYING, SongStatus.COMPLETED),
            (SongStatus.FAILED, SongStatus.QUEUED),
        ],
    )
    def test_allowed(self, current: SongStatus, target: SongStatus) -> None:
        check_transition(current, target)

    @pytest.mark.parametrize(
        "current,target",
        [
            (SongStatus.QUEUED, SongStatus.SEPARATING),
            (SongStatus.READY, SongStatus.FAILED),
            (SongStatus.PLAYING, SongStatus.READY),
            (SongStatus.COMPLETED, SongStatus.PLAYING),
            (SongStatus.FAILED, SongStatus.READY),
        ],
    )
    def test_rejected(self, current: SongStatus, target: SongStatus) -> None:
        with pytest.raises(InvalidTransition):
            check_transition(current, target)

    def test_active_and_terminal(self) -> None:

        assert SongStatus.COMPOSING.is_active
        assert not SongStatus.READY.is_active
        assert SongStatus.FAILED.is_terminal
        assert Stage.SYNC_LYRICS.status is SongStatus.SYNCING


class TestArtifactSet:
    def test_missing_mandatory(self) -> None:

        assert ArtifactSet(instrumental="i").missing_mandatory() == ["video"]
        assert ArtifactSet(instrumental="i", video="v").missing_mandatory() == []

    def test_paths_skip_empty(self) -> None:

        assert ArtifactSet(original="o", video="v").paths() == ["o", "v"]


class TestErrors:
    def test_stage_failure_record(self) -> None:

        assert AcquisitionFailed("no seeders").record == "acquire: AcquisitionFailed: no seeders"

    def test_timeout_message(self) -> None:

        assert str(StageTimeout("compose", 900.0)) == "compose timed out after 900s"
