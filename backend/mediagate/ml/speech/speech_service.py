"""
MediaGate Speech Service — transcription for the audio modality.

faster-whisper with VAD filtering, run on a 16 kHz mono WAV extracted by
ffmpeg. Segments are kept verbatim: repetition filtering would hide a
repeated slur from the denylist.

Unlike a search index, moderation cannot accept a silently empty result:
any decode or model failure raises, and only a clip with no audio stream
or no detected speech yields an empty transcript.
"""
from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from mediagate.core.config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()

_NO_AUDIO_MARKERS = ("does not contain any stream", "Output file is empty", "matches no streams")


@dataclass
class TranscriptSegment:
    start_time: float
    end_time: float
    text: str


class SpeechService:
    """Whisper-based speech-to-text."""

    _model = None

    def _load_model(self):
        from faster_whisper import WhisperModel

        device = settings.device
        compute_type = "int8" if device == "cpu" else settings.whisper_compute_type
        logger.info(f"Loading Whisper model: {settings.whisper_model} on {device} ({compute_type})")
        self._model = WhisperModel(settings.whisper_model, device=device, compute_type=compute_type)
        logger.info("Whisper model loaded.")

    @staticmethod
    def extract_audio(media_path: Path, work_dir: Path) -> Optional[Path]:
        """WAV 16 kHz mono for Whisper. None when the clip has no audio track."""
        audio_path = work_dir / f"{media_path.stem}.wav"
        cmd = [
            "ffmpeg", "-i", str(media_path),
            "-vn", "-acodec", "pcm_s16le",
            "-ar", "16000", "-ac", "1",
            str(audio_path),
            "-y", "-loglevel", "error",
        ]
        try:
            subprocess.run(cmd, check=True, timeout=600, capture_output=True, text=True)
        except subprocess.CalledProcessError as e:
            if any(marker in (e.stderr or "") for marker in _NO_AUDIO_MARKERS):
                logger.info(f"No audio stream in {media_path.name}")
                return None
            raise RuntimeError(f"Audio extraction failed: {e.stderr or e}") from e
        except subprocess.TimeoutExpired as e:
            raise RuntimeError("Audio extraction timed out (10 min limit)") from e
        return audio_path

    def transcribe_file(self, media_path: str, work_dir: str) -> str:
        """Full transcript of the media file; '' for silence or no audio track."""
        audio = self.extract_audio(Path(media_path), Path(work_dir))
        if audio is None:
            return ""
        try:
            segments = self._run_transcription(str(audio))
        finally:
            audio.unlink(missing_ok=True)
        return " ".join(s.text for s in segments).strip()

    def _run_transcription(self, audio_path: str) -> List[TranscriptSegment]:
        if self._model is None:
            self._load_model()

        segments_iter, info = self._model.transcribe(
            audio_path,
            beam_size=settings.whisper_beam_size,
            condition_on_previous_text=True,
            vad_filter=True,
            vad_parameters=dict(min_silence_duration_ms=400, speech_pad_ms=200),
            no_speech_threshold=0.6,
            compression_ratio_threshold=2.4,
        )
        segments = [
            TranscriptSegment(round(s.start, 2), round(s.end, 2), s.text.strip())
            for s in segments_iter
        ]
        logger.info(
            f"Transcribed {audio_path}: lang={info.language} "
            f"({info.language_probability:.2f}), segments={len(segments)}"
        )
        return segments


speech_service = SpeechService()
