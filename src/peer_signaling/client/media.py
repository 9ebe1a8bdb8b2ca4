import logging
from pathlib import Path
from typing import Optional

import av.error
from aiortc.contrib.media import MediaBlackhole, MediaPlayer, MediaRecorder
from aiortc.mediastreams import MediaStreamTrack

logger = logging.getLogger(__name__)


class LocalMediaUnavailable(Exception):
    """Capture device or file could not be opened."""


def capture_local_media(
    source: str, media_format: Optional[str] = None, options: Optional[dict] = None
) -> list[MediaStreamTrack]:
    """
    Opens `source` (a device such as /dev/video0 with format v4l2, or a
    media file) and returns its audio and video tracks.

    Raises:
        LocalMediaUnavailable: If the source cannot be opened.
    """
    try:
        player = MediaPlayer(source, format=media_format, options=options or {})
    except (av.error.FFmpegError, OSError) as e:
        raise LocalMediaUnavailable(f"Cannot open {source}: {e}") from e

    tracks = [track for track in (player.audio, player.video) if track is not None]
    if not tracks:
        raise LocalMediaUnavailable(f"{source} has no audio or video")

    logger.info(f"Captured {', '.join(t.kind for t in tracks)} from {source}")
    return tracks


def session_recording_path(base: Path, session: int) -> Path:
    """call.mp4 for the first session, then call-2.mp4, call-3.mp4, ..."""
    if session <= 1:
        return base
    return base.with_stem(f"{base.stem}-{session}")


class RemoteMediaSink:
    """
    Consumes remote tracks, writing them to a file or discarding them.

    A recorder or blackhole is created on the first track of a session
    and released by `stop`. With `record_to`, each session is written to
    its own file (see `session_recording_path`).
    """

    def __init__(self, record_to: Optional[str] = None):
        self.record_to = Path(record_to) if record_to else None
        self.sessions = 0
        self._sink: Optional[MediaBlackhole | MediaRecorder] = None

    def _open(self) -> MediaBlackhole | MediaRecorder:
        self.sessions += 1
        if self.record_to is None:
            return MediaBlackhole()

        path = session_recording_path(self.record_to, self.sessions)
        logger.info(f"Recording remote media to {path}")
        return MediaRecorder(str(path))

    async def add_track(self, track: MediaStreamTrack) -> None:
        if self._sink is None:
            self._sink = self._open()

        self._sink.addTrack(track)
        # start() only spawns readers for tracks added so far and skips
        # the ones already running.
        await self._sink.start()

    async def stop(self) -> None:
        if self._sink is None:
            return

        sink, self._sink = self._sink, None
        await sink.stop()
