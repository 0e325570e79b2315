"""
Narration Transcription Module using OpenAI Whisper

This module is responsible for:
1. Loading narration audio (a recorded audio blob or the audio track of a video)
2. Transcribing it to text using Whisper
3. Degrading gracefully: a failed transcription yields an empty transcript

The transcript is context for whoever writes or generates the step texts;
the capture and alignment stages never depend on it.
"""

import json
import logging
import os
import tempfile
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

try:
    import whisper
except ImportError:
    whisper = None

try:
    import librosa
except ImportError:
    librosa = None


logger = logging.getLogger(__name__)
logging.basicConfig(level=logging.INFO)

SAMPLE_RATE = 16000


@dataclass
class TranscriptionResult:
    """Complete transcription result"""
    full_text: str
    language: str
    duration: float
    segments: List[Dict] = field(default_factory=list)

    @classmethod
    def empty(cls) -> "TranscriptionResult":
        return cls(full_text='', language='unknown', duration=0.0)


class VoiceTranscriber:
    """
    Whisper-based speech-to-text.

    Every public transcription method returns an empty transcript instead
    of raising when the audio is missing, unreadable or silent.
    """

    def __init__(
        self,
        model_size: str = 'base',
        device: str = 'cpu',
        language: Optional[str] = None,
        min_audio_bytes: int = 1000
    ):
        """
        Initialize the VoiceTranscriber.

        Args:
            model_size: Whisper model size ('tiny', 'base', 'small', 'medium', 'large')
            device: Device to use ('cuda' or 'cpu')
            language: Language code (e.g., 'en'). If None, auto-detect.
            min_audio_bytes: Blobs smaller than this are treated as silence
        """
        if whisper is None:
            raise ImportError("Whisper not installed. Run: pip install openai-whisper")
        if librosa is None:
            raise ImportError("librosa not installed. Run: pip install librosa")

        self.model_size = model_size
        self.device = device
        self.language = language
        self.min_audio_bytes = min_audio_bytes

        logger.info(f"Loading Whisper model: {model_size}")
        self.model = whisper.load_model(model_size, device=device)
        logger.info("Whisper model loaded successfully")

    def transcribe(self, audio_path: str) -> TranscriptionResult:
        """
        Transcribe an audio file, or the audio track of a video file.

        Args:
            audio_path: Path to the audio or video file

        Returns:
            TranscriptionResult (empty on failure)
        """
        logger.info(f"Transcribing audio: {audio_path}")
        try:
            audio, sr = librosa.load(audio_path, sr=SAMPLE_RATE, mono=True)
        except Exception as e:
            logger.warning(f"Could not load audio from {audio_path}: {e}")
            return TranscriptionResult.empty()

        duration = len(audio) / sr if sr else 0.0
        if duration == 0.0:
            logger.warning("Audio track is empty")
            return TranscriptionResult.empty()

        try:
            result = self.model.transcribe(audio, language=self.language, verbose=False)
        except Exception as e:
            logger.warning(f"Transcription failed, continuing without transcript: {e}")
            return TranscriptionResult.empty()

        full_text = result.get('text', '').strip()
        language = result.get('language', 'unknown')
        logger.info(f"Transcription complete. Language: {language}, {len(full_text)} chars")

        return TranscriptionResult(
            full_text=full_text,
            language=language,
            duration=duration,
            segments=[
                {'start': s['start'], 'end': s['end'], 'text': s['text'].strip()}
                for s in result.get('segments', [])
            ]
        )

    def transcribe_text(self, audio_path: str) -> str:
        return self.transcribe(audio_path).full_text

    def transcribe_blob(self, audio: bytes, suffix: str = '.webm') -> str:
        """
        Transcribe an in-memory audio blob.

        Args:
            audio: Encoded audio bytes
            suffix: File extension hinting the container format

        Returns:
            Transcript text, '' when nothing could be transcribed
        """
        if not audio or len(audio) < self.min_audio_bytes:
            logger.warning(f"Audio blob too small ({len(audio or b'')} bytes), skipping transcription")
            return ''

        fd, tmp_path = tempfile.mkstemp(suffix=suffix)
        try:
            with os.fdopen(fd, 'wb') as f:
                f.write(audio)
            return self.transcribe_text(tmp_path)
        finally:
            os.unlink(tmp_path)

    def save_transcription(self, result: TranscriptionResult, output_path: str):
        """Save a transcription result to a JSON file."""
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        with open(output_path, 'w', encoding='utf-8') as f:
            json.dump(asdict(result), f, indent=2)

        logger.info(f"Saved transcription to {output_path}")
