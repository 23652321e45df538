"""
Multi-Modal Moderation Analyzer.

Applicable modalities by kind:
    video / video_comment / thread_video → video + audio (run concurrently)
    image                                → image

Each modality is one ``submit`` + ``await_result`` round trip under the
shared retry policy. The result is always a ModalityResult:
  - reject              a policy violation was found (never retried)
  - clear               the annotations were complete and showed nothing
  - inconclusive_error  retries ran out, the service failed, or the
                        annotations were missing the evidence needed to clear
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Sequence

from mediagate.core.config import Settings, get_settings
from mediagate.core.errors import PolicyRejection
from mediagate.core.metrics import MODALITY_VERDICTS
from mediagate.core.retry import RetryExhausted, RetryPolicy, retry_call
from mediagate.models.models import ContentKind
from mediagate.schemas.schemas import Modality, ModalityResult, Verdict
from mediagate.services.moderation.analysis_client import (
    AnalysisService, Annotations, DetectedLabel, Feature, Likelihood,
)
from mediagate.services.moderation.gesture import detect_sustained_gestures
from mediagate.services.moderation.transcript_filter import (
    TranscriptFilter, term_pattern, transcript_filter,
)

logger = logging.getLogger(__name__)

MODALITY_FEATURES: Dict[Modality, FrozenSet[Feature]] = {
    Modality.VIDEO: frozenset({
        Feature.EXPLICIT_CONTENT, Feature.OBJECT_TRACKING,
        Feature.PERSON_DETECTION, Feature.LABEL_DETECTION,
    }),
    Modality.AUDIO: frozenset({Feature.SPEECH_TRANSCRIPTION}),
    Modality.IMAGE: frozenset({Feature.SAFE_SEARCH, Feature.LABEL_DETECTION}),
}

OBSCENE_GESTURE_LABELS = ("middle finger", "obscene gesture")

IMAGE_LABEL_DENYLIST = (
    # Explicit
    "nudity", "nude", "naked", "lingerie", "pornography", "erotic", "adult content",
    # Weapons and gore
    "weapon", "gun", "knife", "sword", "blood",
    # Drugs
    "drug", "cocaine", "marijuana",
    # Hate symbols
    "nazi", "swastika", "confederate flag", "hate symbol",
    # Gestures
    "middle finger", "obscene gesture",
)

SAFE_SEARCH_CATEGORIES = ("adult", "violence", "racy")

LABEL_MIN_CONFIDENCE = 0.5


def applicable_modalities(kind: ContentKind) -> List[Modality]:
    if kind.is_video:
        return [Modality.VIDEO, Modality.AUDIO]
    return [Modality.IMAGE]


def matching_labels(
    labels: Iterable[DetectedLabel], terms: Sequence[str],
    min_confidence: float = LABEL_MIN_CONFIDENCE,
) -> List[str]:
    patterns = [term_pattern(t) for t in terms]
    hits = []
    for label in labels:
        if label.confidence < min_confidence:
            continue
        text = label.description.lower()
        if any(p.search(text) for p in patterns) and label.description not in hits:
            hits.append(label.description)
    return hits


def _inconclusive(modality: Modality, detail: str, **features) -> ModalityResult:
    return ModalityResult(
        modality=modality, verdict=Verdict.INCONCLUSIVE_ERROR,
        confidence=0.0, reason=f"analysis inconclusive ({detail})", features=features,
    )


class ModerationAnalyzer:
    def __init__(
        self,
        service: AnalysisService,
        settings: Optional[Settings] = None,
        text_filter: TranscriptFilter = transcript_filter,
    ):
        self.service = service
        self.settings = settings or get_settings()
        self.text_filter = text_filter
        self.policy = RetryPolicy.from_settings(
            self.settings,
            timeout=self.settings.analysis_timeout_seconds + self.settings.external_call_timeout_seconds,
            max_attempts=self.settings.analysis_max_attempts,
        )
        self._evaluators: Dict[Modality, Callable[[Annotations], ModalityResult]] = {
            Modality.VIDEO: self.evaluate_video,
            Modality.AUDIO: self.evaluate_audio,
            Modality.IMAGE: self.evaluate_image,
        }

    async def analyze(self, kind: ContentKind, durable_uri: str) -> List[ModalityResult]:
        """Run every applicable modality concurrently; one result per modality."""
        modalities = applicable_modalities(kind)
        results = await asyncio.gather(*(self.run_modality(m, durable_uri) for m in modalities))
        return list(results)

    async def run_modality(self, modality: Modality, uri: str) -> ModalityResult:
        try:
            annotations = await retry_call(
                f"analysis.{modality.value}", self._analyze_once, uri,
                MODALITY_FEATURES[modality], policy=self.policy,
            )
            result = self._evaluators[modality](annotations)
        except PolicyRejection as e:
            result = ModalityResult(
                modality=modality, verdict=Verdict.REJECT, confidence=1.0, reason=e.reason,
            )
        except RetryExhausted as e:
            logger.warning(f"{modality.value} analysis exhausted retries for {uri}: {e}")
            result = _inconclusive(modality, f"{e.attempts} attempts failed", error=str(e.last_error))
        except Exception as e:
            logger.error(f"{modality.value} analysis failed for {uri}: {type(e).__name__}: {e}")
            result = _inconclusive(modality, "service error", error=f"{type(e).__name__}: {e}")

        MODALITY_VERDICTS.labels(modality=modality.value, verdict=result.verdict.value).inc()
        logger.info(f"{modality.value} verdict for {uri}: {result.verdict.value}"
                    + (f" ({result.reason})" if result.reason else ""))
        return result

    async def _analyze_once(self, uri: str, features: FrozenSet[Feature]) -> Annotations:
        handle = await self.service.submit(uri, features)
        return await self.service.await_result(handle, self.settings.analysis_timeout_seconds)

    # ── Evaluation ───────────────────────────────────────────────────────

    def evaluate_video(self, ann: Annotations) -> ModalityResult:
        s = self.settings
        if not ann.explicit_frames:
            return _inconclusive(Modality.VIDEO, "no frames analysed")

        threshold = Likelihood.parse(s.explicit_reject_likelihood)
        worst = max(f.likelihood for f in ann.explicit_frames)
        flagged = [f for f in ann.explicit_frames if f.likelihood >= threshold]
        gestures = detect_sustained_gestures(
            ann.person_tracks, s.gesture_elevation_delta,
            s.gesture_min_consecutive_frames, s.pose_min_visibility,
        )
        gesture_labels = matching_labels(ann.object_labels + ann.labels, OBSCENE_GESTURE_LABELS)

        features = {
            "frames_analysed": len(ann.explicit_frames),
            "explicit_frames": len(flagged),
            "max_explicit_likelihood": worst.name,
            "persons_tracked": len(ann.person_tracks),
            "gestures": [asdict(g) for g in gestures],
            "labels": sorted({l.description for l in ann.object_labels + ann.labels})[:50],
        }

        reasons = []
        if flagged:
            reasons.append(
                f"explicit content {worst.name} in {len(flagged)} frame(s) "
                f"starting at {flagged[0].time_offset:.1f}s"
            )
        reasons.extend(g.describe() for g in gestures)
        if gesture_labels:
            reasons.append(f"obscene gesture detected ({', '.join(gesture_labels)})")

        if reasons:
            return ModalityResult(
                modality=Modality.VIDEO, verdict=Verdict.REJECT,
                confidence=max(worst / Likelihood.VERY_LIKELY, 0.7) if flagged else 0.7,
                reason="; ".join(reasons), features=features,
            )
        unknown = [f for f in ann.explicit_frames if f.likelihood is Likelihood.UNKNOWN]
        if unknown:
            return _inconclusive(
                Modality.VIDEO, f"explicit likelihood unknown in {len(unknown)} frame(s)", **features,
            )
        return ModalityResult(
            modality=Modality.VIDEO, verdict=Verdict.CLEAR,
            confidence=round(1.0 - worst / Likelihood.VERY_LIKELY, 3),
            features=features,
        )

    def evaluate_audio(self, ann: Annotations) -> ModalityResult:
        if ann.transcript is None:
            return _inconclusive(Modality.AUDIO, "no transcript returned")

        scan = self.text_filter.scan(ann.transcript)
        features = {
            "transcript": ann.transcript,
            "keywords": scan.keywords,
            "matches": scan.matches,
        }
        if scan.flagged:
            terms = ", ".join(f'"{t}"' for t in scan.matches)
            return ModalityResult(
                modality=Modality.AUDIO, verdict=Verdict.REJECT, confidence=1.0,
                reason=f"inappropriate language: {terms}", features=features,
            )
        return ModalityResult(
            modality=Modality.AUDIO, verdict=Verdict.CLEAR, confidence=1.0, features=features,
        )

    def evaluate_image(self, ann: Annotations) -> ModalityResult:
        missing = [c for c in SAFE_SEARCH_CATEGORIES if c not in ann.safe_search]
        if missing:
            return _inconclusive(Modality.IMAGE, f"safe-search missing {', '.join(missing)}")

        threshold = Likelihood.parse(self.settings.image_reject_likelihood)
        scores = {c: Likelihood.parse(ann.safe_search[c]) for c in SAFE_SEARCH_CATEGORIES}
        over = [c for c, lk in scores.items() if lk >= threshold]
        bad_labels = matching_labels(ann.labels + ann.object_labels, IMAGE_LABEL_DENYLIST)

        features = {
            "safe_search": {c: lk.name for c, lk in scores.items()},
            "labels": sorted({l.description for l in ann.labels})[:50],
        }
        reasons = [f"{c} content {scores[c].name}" for c in over]
        if bad_labels:
            reasons.append(f"inappropriate content: {', '.join(bad_labels)}")

        worst = max(scores.values())
        if reasons:
            return ModalityResult(
                modality=Modality.IMAGE, verdict=Verdict.REJECT,
                confidence=max(worst / Likelihood.VERY_LIKELY, 0.7),
                reason="; ".join(reasons), features=features,
            )
        unknown = [c for c, lk in scores.items() if lk is Likelihood.UNKNOWN]
        if unknown:
            return _inconclusive(
                Modality.IMAGE, f"safe-search unknown for {', '.join(unknown)}", **features,
            )
        return ModalityResult(
            modality=Modality.IMAGE, verdict=Verdict.CLEAR,
            confidence=round(1.0 - worst / Likelihood.VERY_LIKELY, 3),
            features=features,
        )
