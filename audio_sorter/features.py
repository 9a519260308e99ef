"""
Melody/timbre feature extraction with Essentia.

Installation (optional feature):
  pip install "audio-sorter[analysis]"      # or: pip install essentia-tensorflow

Each track is summarised as a fixed 40-component vector:

    [0:20]   MFCC means (20 coefficients)
    [20:32]  HPCP / chroma means (12 pitch classes)
    [32:38]  spectral contrast means (6 bands)
    [38]     spectral valley mean
    [39]     BPM / 100

Only the first ``max_duration`` seconds are analysed.
"""

from __future__ import annotations

import math
from pathlib import Path
from typing import Optional

import numpy as np
from loguru import logger

from .errors import FeatureExtractionError
from .models import FEATURE_DIMENSION, validate_vector

# ---------------------------------------------------------------------------
# Optional Essentia import: unavailable unless the analysis extra is installed
# ---------------------------------------------------------------------------

try:
    import essentia
    import essentia.standard as es

    ESSENTIA_AVAILABLE = True
    ESSENTIA_VERSION: Optional[str] = essentia.__version__
except ImportError:
    ESSENTIA_AVAILABLE = False
    ESSENTIA_VERSION = None
    logger.debug("Essentia not installed, feature extraction unavailable (optional feature)")

SAMPLE_RATE = 44100
FRAME_SIZE = 2048
HOP_SIZE = 1024
N_MFCC = 20
N_CONTRAST_BANDS = 6


class FeatureExtractor:
    """Extracts the 40-float feature vector used for similarity search."""

    def __init__(self, max_duration: float = 120.0) -> None:
        self.max_duration = max_duration

    @property
    def available(self) -> bool:
        return ESSENTIA_AVAILABLE

    def extract(self, path: str) -> list[float]:
        """
        Analyse *path* and return its feature vector.

        Raises:
            FeatureExtractionError: Essentia missing, the file cannot be
                decoded, or the signal is too short/silent to summarise.
        """
        if not ESSENTIA_AVAILABLE:
            raise FeatureExtractionError(
                "Essentia is not installed. Install with: pip install 'audio-sorter[analysis]'"
            )

        try:
            audio = es.MonoLoader(filename=path, sampleRate=SAMPLE_RATE)()
        except Exception as exc:  # noqa: BLE001
            raise FeatureExtractionError(f"Could not decode {Path(path).name}: {exc}") from exc

        audio = audio[: int(self.max_duration * SAMPLE_RATE)]
        if audio.size < SAMPLE_RATE:
            raise FeatureExtractionError("Audio shorter than one second")

        try:
            frame_features = self._frame_features(audio)
            bpm, _beats, _confidence, _estimates, _intervals = es.RhythmExtractor2013(method="multifeature")(audio)
        except Exception as exc:  # noqa: BLE001
            raise FeatureExtractionError(f"Feature computation failed: {exc}") from exc

        values = [float(v) for v in frame_features] + [float(bpm) / 100.0]
        if len(values) != FEATURE_DIMENSION or any(math.isnan(v) or math.isinf(v) for v in values):
            raise FeatureExtractionError(f"Unexpected feature output ({len(values)} values)")

        logger.debug(f"Features for {Path(path).name}: bpm={float(bpm):.1f}")
        return validate_vector(values)

    @staticmethod
    def _frame_features(audio) -> np.ndarray:
        """Mean MFCC, HPCP, spectral contrast and valley over all frames (39 values)."""
        window = es.Windowing(type="hann")
        spectrum = es.Spectrum()
        mfcc = es.MFCC(numberCoefficients=N_MFCC)
        peaks = es.SpectralPeaks(orderBy="magnitude", magnitudeThreshold=1e-5,
                                 minFrequency=20, maxFrequency=3500, maxPeaks=60)
        hpcp = es.HPCP(size=12)
        contrast = es.SpectralContrast(frameSize=FRAME_SIZE, sampleRate=SAMPLE_RATE,
                                       numberBands=N_CONTRAST_BANDS)

        rows = []
        for frame in es.FrameGenerator(audio, frameSize=FRAME_SIZE, hopSize=HOP_SIZE, startFromZero=True):
            spec = spectrum(window(frame))
            _bands, coeffs = mfcc(spec)
            freqs, mags = peaks(spec)
            chroma = hpcp(freqs, mags)
            sc, valley = contrast(spec)
            rows.append(np.concatenate([coeffs, chroma, sc, [float(np.mean(valley))]]))

        if not rows:
            raise FeatureExtractionError("No analysable frames")
        return np.mean(np.asarray(rows, dtype=np.float64), axis=0)
