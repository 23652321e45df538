"""
MediaGate Vision Service — CLIP zero-shot moderation signals.

One OpenCLIP model answers three questions per frame or still:
  - explicit-content probability (explicit prompts vs. safe prompts)
  - safe-search categories adult / violence / racy, each a prompt pair
  - labels from a moderation vocabulary (gestures, weapons, hate symbols)
    plus everyday objects, so a clean frame still reports what it saw

Scores are softmax probabilities bucketed onto the Likelihood scale by the
analysis layer.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import cv2
import numpy as np
import torch
from PIL import Image

from mediagate.core.config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()

# ── Prompt Sets ──────────────────────────────────────────────────────────

EXPLICIT_PROMPTS = [
    "an explicit pornographic image", "a photo of a naked person",
    "a photo of sexual activity",
]
SAFE_PROMPTS = [
    "a safe for work photo", "a photo of a fully clothed person",
    "an ordinary everyday scene",
]

SAFE_SEARCH_PROMPTS: Dict[str, Tuple[str, str]] = {
    "adult": ("a sexually explicit adult image", "a family friendly image"),
    "violence": ("a violent or gory image with blood or injuries", "a peaceful non-violent image"),
    "racy": ("a sexually suggestive racy photo", "a modest non-suggestive photo"),
}

MODERATION_LABELS = [
    "middle finger", "obscene gesture", "weapon", "gun", "knife", "blood",
    "nazi symbol", "swastika", "confederate flag", "drugs", "cocaine",
    "lingerie", "nudity",
]

OBJECT_LABELS = [
    "person", "face", "hand", "thumbs up", "peace sign", "waving hand",
    "dog", "cat", "car", "food", "drink", "phone", "computer", "book",
    "ball", "tree", "beach", "building", "sky", "text overlay",
]


@dataclass
class VisualTag:
    label: str
    confidence: float


@dataclass
class FrameScores:
    explicit: float
    safe_search: Dict[str, float] = field(default_factory=dict)
    tags: List[VisualTag] = field(default_factory=list)


class VisionService:
    """CLIP-based zero-shot moderation scoring with lazy model loading."""

    _clip_model = None
    _clip_preprocess = None
    _clip_tokenizer = None
    _text_cache: Dict[str, torch.Tensor] = {}

    # ── Model lifecycle ──────────────────────────────────────────────────

    def ensure_clip(self):
        if self._clip_model is not None:
            return
        import open_clip

        logger.info(f"Loading CLIP model: {settings.clip_model} ({settings.clip_pretrained}) on {settings.device}")
        model, _, preprocess = open_clip.create_model_and_transforms(
            settings.clip_model, pretrained=settings.clip_pretrained, device=settings.device,
        )
        model.eval()
        self._clip_model = model
        self._clip_preprocess = preprocess
        self._clip_tokenizer = open_clip.get_tokenizer(settings.clip_model)
        self._text_cache.clear()
        logger.info("CLIP model loaded.")

    @torch.no_grad()
    def _encode_prompts(self, key: str, prompts: List[str]) -> torch.Tensor:
        cached = self._text_cache.get(key)
        if cached is None:
            tokens = self._clip_tokenizer(prompts).to(settings.device)
            features = self._clip_model.encode_text(tokens)
            cached = features / features.norm(dim=-1, keepdim=True)
            self._text_cache[key] = cached
        return cached

    @torch.no_grad()
    def _encode_image(self, image: Image.Image) -> torch.Tensor:
        tensor = self._clip_preprocess(image).unsqueeze(0).to(settings.device)
        features = self._clip_model.encode_image(tensor)
        return features / features.norm(dim=-1, keepdim=True)

    # ── Scoring ──────────────────────────────────────────────────────────

    @torch.no_grad()
    def score(self, image: Image.Image, label_threshold: float = 0.2) -> FrameScores:
        self.ensure_clip()
        img = self._encode_image(image)
        scale = 100.0

        explicit_text = self._encode_prompts("explicit", EXPLICIT_PROMPTS + SAFE_PROMPTS)
        probs = (scale * img @ explicit_text.T).softmax(dim=-1).squeeze(0).cpu().numpy()
        explicit = float(probs[: len(EXPLICIT_PROMPTS)].sum())

        safe_search = {}
        for category, pair in SAFE_SEARCH_PROMPTS.items():
            text = self._encode_prompts(f"safe:{category}", list(pair))
            pair_probs = (scale * img @ text.T).softmax(dim=-1).squeeze(0).cpu().numpy()
            safe_search[category] = round(float(pair_probs[0]), 4)

        labels = MODERATION_LABELS + OBJECT_LABELS
        text = self._encode_prompts("labels", [f"a photo of {l}" for l in labels])
        label_probs = (scale * img @ text.T).softmax(dim=-1).squeeze(0).cpu().numpy()
        tags = [
            VisualTag(label=labels[i], confidence=round(float(label_probs[i]), 4))
            for i in np.argsort(label_probs)[::-1]
            if label_probs[i] >= label_threshold
        ]
        return FrameScores(explicit=round(explicit, 4), safe_search=safe_search, tags=tags)

    # ── Frame sampling ───────────────────────────────────────────────────

    @staticmethod
    def sample_frames(
        video_path: str,
        interval: Optional[float] = None,
        max_frames: Optional[int] = None,
    ) -> List[Tuple[float, np.ndarray]]:
        """Evenly spaced RGB frames as (timestamp, array). Raises if unreadable."""
        interval = interval or settings.frame_sample_interval
        max_frames = max_frames or settings.max_frames_per_video

        cap = cv2.VideoCapture(video_path)
        if not cap.isOpened():
            raise RuntimeError(f"Cannot open video: {video_path}")

        fps = max(cap.get(cv2.CAP_PROP_FPS) or 30.0, 1.0)
        step = max(1, int(fps * interval))
        frames: List[Tuple[float, np.ndarray]] = []
        frame_idx = 0
        try:
            while True:
                ok, frame = cap.read()
                if not ok:
                    break
                if frame_idx % step == 0:
                    frames.append((round(frame_idx / fps, 3), cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)))
                    if len(frames) >= max_frames:
                        logger.warning(f"Frame limit reached ({max_frames})")
                        break
                frame_idx += 1
        finally:
            cap.release()

        logger.info(f"Sampled {len(frames)} frames from {video_path} (interval={interval}s)")
        return frames


vision_service = VisionService()
