"""
Sustained-gesture heuristic over tracked person landmarks.

A sampled frame is *elevated* when, on either side, the wrist sits above the
same-side shoulder of the same person by more than ``delta`` (fraction of
frame height). A gesture is only flagged when elevation holds for at least
``min_consecutive`` consecutive sampled frames of one track; a single raised
hand (waving, reaching) never qualifies. Frames missing the landmarks break
the run.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Optional

from mediagate.services.moderation.analysis_client import Landmark, PersonTrack, PoseFrame

SIDES = ("left", "right")


@dataclass
class GestureFinding:
    track_id: str
    start: float
    end: float
    frames: int

    def describe(self) -> str:
        return (
            f"sustained raised-hand gesture by person {self.track_id} "
            f"({self.frames} frames, {self.start:.1f}s-{self.end:.1f}s)"
        )


def _usable(lm: Optional[Landmark], min_confidence: float) -> bool:
    return lm is not None and lm.confidence >= min_confidence


def is_elevated(frame: PoseFrame, delta: float, min_confidence: float = 0.0) -> bool:
    for side in SIDES:
        shoulder = frame.landmarks.get(f"{side}_shoulder")
        wrist = frame.landmarks.get(f"{side}_wrist")
        if not (_usable(shoulder, min_confidence) and _usable(wrist, min_confidence)):
            continue
        if shoulder.y - wrist.y > delta:
            return True
    return False


def longest_elevated_run(
    track: PersonTrack, delta: float, min_confidence: float = 0.0,
) -> Optional[GestureFinding]:
    best: Optional[GestureFinding] = None
    run_start = None
    run_len = 0
    frames = sorted(track.frames, key=lambda f: f.time_offset)

    for frame in frames:
        if is_elevated(frame, delta, min_confidence):
            if run_len == 0:
                run_start = frame.time_offset
            run_len += 1
            if best is None or run_len > best.frames:
                best = GestureFinding(track.track_id, run_start, frame.time_offset, run_len)
        else:
            run_len = 0
    return best


def detect_sustained_gestures(
    tracks: Iterable[PersonTrack],
    delta: float = 0.1,
    min_consecutive: int = 3,
    min_confidence: float = 0.0,
) -> List[GestureFinding]:
    """One finding per track whose elevation run reaches ``min_consecutive``."""
    findings = []
    for track in tracks:
        run = longest_elevated_run(track, delta, min_confidence)
        if run is not None and run.frames >= min_consecutive:
            findings.append(run)
    return findings
