"""Append-only store of LCD frames."""

from __future__ import annotations

from .definitions import LCDFrame


class LCDFrameStore:
    """Owns every LCD frame of a session, indexed by sequential id.

    Frames receive ids 0, 1, 2, ... in insertion order; a frame must carry
    the id ``len(store)`` when added.
    """

    def __init__(self) -> None:
        self._frames: list[LCDFrame] = []
        self._timestamps: dict[int, int] = {}

    def add(self, frame: LCDFrame) -> int:
        """Append a frame and return its id.

        Raises:
            ValueError: If the frame id is not the next sequential id
        """
        if frame.id != len(self._frames):
            raise ValueError(f"Expected LCD frame id {len(self._frames)}, got {frame.id}")
        self._frames.append(frame)
        self._timestamps[frame.id] = frame.timestamp
        return frame.id

    def timestamp(self, frame_id: int) -> int:
        """Return the timestamp of a stored frame."""
        if frame_id not in self._timestamps:
            raise ValueError(f"Unknown LCD frame id {frame_id}")
        return self._timestamps[frame_id]

    @property
    def next_id(self) -> int:
        """Return the id the next added frame must carry."""
        return len(self._frames)

    @property
    def latest(self) -> LCDFrame | None:
        """Return the most recently added frame."""
        return self._frames[-1] if self._frames else None

    def __getitem__(self, frame_id: int) -> LCDFrame:
        if not 0 <= frame_id < len(self._frames):
            raise ValueError(f"Unknown LCD frame id {frame_id}")
        return self._frames[frame_id]

    def __len__(self) -> int:
        return len(self._frames)

    def __iter__(self):
        return iter(self._frames)
