"""
MediaGate Pose Service — MediaPipe shoulder/wrist landmarks per frame.

Only the four landmarks the gesture heuristic reads are kept, in MediaPipe's
normalised coordinates (x, y in 0..1, y grows downward) with visibility as
confidence. MediaPipe Pose tracks a single person, reported as track "0".
"""
from __future__ import annotations

import logging
from typing import Dict, List, Optional, Tuple

import numpy as np

from mediagate.core.config import get_settings
from mediagate.services.moderation.analysis_client import Landmark, PersonTrack, PoseFrame

logger = logging.getLogger(__name__)
settings = get_settings()

# MediaPipe Pose landmark indices
LANDMARK_INDEX = {
    "left_shoulder": 11,
    "right_shoulder": 12,
    "left_wrist": 15,
    "right_wrist": 16,
}


class PoseService:
    def _new_estimator(self):
        import mediapipe as mp

        return mp.solutions.pose.Pose(
            static_image_mode=False,
            model_complexity=1,
            enable_segmentation=False,
            min_detection_confidence=0.5,
        )

    @staticmethod
    def _landmarks(results) -> Optional[Dict[str, Landmark]]:
        if not results.pose_landmarks:
            return None
        points = results.pose_landmarks.landmark
        return {
            name: Landmark(points[idx].x, points[idx].y, points[idx].visibility)
            for name, idx in LANDMARK_INDEX.items()
        }

    def track(self, frames: List[Tuple[float, np.ndarray]]) -> List[PersonTrack]:
        """Pose over RGB frames in time order. Empty list when nobody is seen."""
        estimator = self._new_estimator()
        track = PersonTrack(track_id="0")
        seen = False
        try:
            for ts, frame in frames:
                landmarks = self._landmarks(estimator.process(frame))
                if landmarks is not None:
                    seen = True
                # A frame without a person stays in the track so it breaks any run
                track.frames.append(PoseFrame(time_offset=ts, landmarks=landmarks or {}))
        finally:
            estimator.close()

        logger.info(f"Pose: person visible in {sum(1 for f in track.frames if f.landmarks)}/{len(frames)} frames")
        return [track] if seen else []


pose_service = PoseService()
