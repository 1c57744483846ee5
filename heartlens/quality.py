"""
Signal-quality assessment.

A window of raw samples is summarised by a fixed 12-feature vector which a
small pre-trained classifier maps to ``bad`` / ``acceptable`` / ``excellent``.

Feature order (fixed; the paired model weights depend on it):

====  =========================================================
 #    feature
====  =========================================================
 0    mean
 1    standard deviation (population)
 2    skewness (3rd standardised moment)
 3    kurtosis (4th standardised moment, non-excess)
 4    peak-to-peak range (max − min)
 5    zero-crossing count (sign changes about zero)
 6    RMS
 7    peak-to-peak range (repeated; the model expects 12 inputs)
 8    median
 9    variance (population)
10    dominant frequency (Hz), DC bin excluded
11    magnitude at the dominant frequency
====  =========================================================

The spectral features come from a direct DFT of the window; at a few
hundred samples the O(n²) cost is negligible.
"""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import List, Optional, Protocol, Sequence, Tuple

import numpy as np
from scipy.stats import kurtosis, skew

from heartlens.config import QUALITY_MIN_SAMPLES
from heartlens.errors import InferenceUnavailable
from heartlens.records import QUALITY_LABELS, QualityResult

logger = logging.getLogger(__name__)

FEATURE_NAMES: Tuple[str, ...] = (
    "mean",
    "std",
    "skewness",
    "kurtosis",
    "range",
    "zero_crossings",
    "rms",
    "peak_to_peak",
    "median",
    "variance",
    "dominant_frequency",
    "dominant_power",
)
N_FEATURES = len(FEATURE_NAMES)


# ---------------------------------------------------------------------------
# Feature extraction
# ---------------------------------------------------------------------------

def dft_magnitudes(signal: np.ndarray) -> np.ndarray:
    """
    Magnitude of the DFT at bins ``1 .. n//2 - 1`` (DC excluded).

    Evaluated directly as a matrix–vector product rather than an FFT.
    """
    n = signal.size
    k = np.arange(1, n // 2)
    if k.size == 0:
        return np.zeros(0)
    t = np.arange(n)
    angles = -2.0 * np.pi * np.outer(k, t) / n
    real = np.cos(angles) @ signal
    imag = np.sin(angles) @ signal
    return np.hypot(real, imag)


def extract_quality_features(
    values: Sequence[float],
    fs: float = 30.0,
    min_samples: int = QUALITY_MIN_SAMPLES,
) -> np.ndarray:
    """
    Return the 12-feature vector for *values*.

    Non-finite samples are ignored.  Fewer than *min_samples* valid samples
    give an all-zero vector.  The result never contains NaN or infinity.
    """
    signal = np.asarray(values, dtype=np.float64).ravel()
    signal = signal[np.isfinite(signal)]
    if signal.size < max(min_samples, 1):
        return np.zeros(N_FEATURES)

    mean = float(signal.mean())
    variance = float(signal.var())
    std = float(np.sqrt(variance))
    if std > 0:
        skewness = float(skew(signal, bias=True))
        kurt = float(kurtosis(signal, fisher=False, bias=True))
    else:
        skewness = kurt = 0.0

    signal_range = float(signal.max() - signal.min())

    negative = signal < 0
    zero_crossings = float(np.count_nonzero(negative[1:] != negative[:-1]))

    rms = float(np.sqrt(np.mean(signal ** 2)))
    median = float(np.median(signal))

    magnitudes = dft_magnitudes(signal)
    if magnitudes.size and magnitudes.max() > 0:
        idx = int(np.argmax(magnitudes))
        dominant_freq = (idx + 1) * fs / signal.size
        dominant_power = float(magnitudes[idx])
    else:
        dominant_freq = dominant_power = 0.0

    features = np.array([
        mean,
        std,
        skewness,
        kurt,
        signal_range,
        zero_crossings,
        rms,
        signal_range,
        median,
        variance,
        dominant_freq,
        dominant_power,
    ], dtype=np.float64)
    return np.nan_to_num(features, nan=0.0, posinf=0.0, neginf=0.0)


# ---------------------------------------------------------------------------
# Inference capability
# ---------------------------------------------------------------------------

class QualityModel(Protocol):
    def classify(self, features: np.ndarray) -> Sequence[float]:
        """Return the three class probabilities (bad, acceptable, excellent)."""
        ...


class DenseQualityModel:
    """
    Feed-forward network evaluated with numpy.

    Hidden layers use ReLU, the output layer softmax.  Optional
    ``feature_mean`` / ``feature_scale`` standardise the input first.
    """

    def __init__(
        self,
        kernels: Sequence[np.ndarray],
        biases: Sequence[np.ndarray],
        feature_mean: Optional[np.ndarray] = None,
        feature_scale: Optional[np.ndarray] = None,
    ) -> None:
        if not kernels or len(kernels) != len(biases):
            raise InferenceUnavailable("model needs matching kernel/bias layers")
        kernels = [np.asarray(k, dtype=np.float64) for k in kernels]
        biases = [np.asarray(b, dtype=np.float64) for b in biases]
        width = N_FEATURES
        for i, (kernel, bias) in enumerate(zip(kernels, biases)):
            if kernel.ndim != 2 or kernel.shape[0] != width or bias.shape != (kernel.shape[1],):
                raise InferenceUnavailable(
                    f"layer {i}: kernel {kernel.shape} / bias {bias.shape} "
                    f"do not fit input width {width}"
                )
            width = kernel.shape[1]
        if width != len(QUALITY_LABELS):
            raise InferenceUnavailable(f"model has {width} outputs, expected 3")

        self.kernels: List[np.ndarray] = kernels
        self.biases: List[np.ndarray] = biases
        self.feature_mean = feature_mean
        self.feature_scale = feature_scale

    def classify(self, features: np.ndarray) -> np.ndarray:
        x = np.asarray(features, dtype=np.float64).reshape(N_FEATURES)
        if self.feature_mean is not None:
            x = x - self.feature_mean
        if self.feature_scale is not None:
            x = x / np.where(self.feature_scale == 0, 1.0, self.feature_scale)

        last = len(self.kernels) - 1
        for i, (kernel, bias) in enumerate(zip(self.kernels, self.biases)):
            x = x @ kernel + bias
            if i < last:
                x = np.maximum(x, 0.0)
        x = x - x.max()
        exp = np.exp(x)
        return exp / exp.sum()


def load_quality_model(path: "str | Path") -> DenseQualityModel:
    """
    Load a :class:`DenseQualityModel` from an ``.npz`` archive.

    The archive holds ``kernel_0, bias_0, kernel_1, bias_1, ...`` and
    optionally ``feature_mean`` / ``feature_scale``.

    Raises
    ------
    InferenceUnavailable
        If the file is missing or does not describe a valid model.
    """
    path = Path(path)
    try:
        with np.load(path, allow_pickle=False) as archive:
            kernels, biases = [], []
            i = 0
            while f"kernel_{i}" in archive.files:
                kernels.append(archive[f"kernel_{i}"])
                biases.append(archive[f"bias_{i}"])
                i += 1
            mean = archive["feature_mean"] if "feature_mean" in archive.files else None
            scale = archive["feature_scale"] if "feature_scale" in archive.files else None
    except (OSError, ValueError, KeyError) as exc:
        raise InferenceUnavailable(f"cannot load quality model {path}: {exc}") from exc

    model = DenseQualityModel(kernels, biases, mean, scale)
    logger.info("Quality model loaded from %s (%d layers).", path, len(kernels))
    return model


# ---------------------------------------------------------------------------
# Classifier
# ---------------------------------------------------------------------------

class QualityClassifier:
    """
    Grade a raw sample window with an injected :class:`QualityModel`.

    :meth:`assess` never raises: without a model, with a short window or
    when inference fails, it returns the previous result unchanged.

    Parameters
    ----------
    model:
        Any object with ``classify(features) -> probabilities[3]``, or *None*.
    fs:
        Sample rate used for the spectral features.
    min_samples:
        Minimum window length for an assessment.
    """

    def __init__(
        self,
        model: Optional[QualityModel] = None,
        fs: float = 30.0,
        min_samples: int = QUALITY_MIN_SAMPLES,
    ) -> None:
        self.model = model
        self.fs = fs
        self.min_samples = min_samples
        self._result = QualityResult()
        self._warned = False

    @property
    def available(self) -> bool:
        return self.model is not None

    @property
    def result(self) -> QualityResult:
        return self._result

    def evaluate(self, values: Sequence[float]) -> Optional[QualityResult]:
        """Classify *values*; *None* when no assessment could be made."""
        if self.model is None or len(values) < self.min_samples:
            return None
        features = extract_quality_features(values, self.fs, self.min_samples)
        try:
            probabilities = np.asarray(self.model.classify(features), dtype=np.float64).ravel()
        except Exception as exc:  # noqa: BLE001 – any model failure freezes quality
            if not self._warned:
                logger.warning("Quality inference failed: %s", exc)
                self._warned = True
            return None
        if probabilities.shape != (len(QUALITY_LABELS),) or not np.isfinite(probabilities).all():
            logger.warning("Quality model returned unusable output %r", probabilities)
            return None

        idx = int(np.argmax(probabilities))
        confidence = float(np.clip(probabilities[idx] * 100.0, 0.0, 100.0))
        return QualityResult(label=QUALITY_LABELS[idx], confidence=confidence)

    def accept(self, result: Optional[QualityResult]) -> QualityResult:
        """Adopt *result* as current (ignored when *None*)."""
        if result is not None:
            self._result = result
        return self._result

    def assess(self, values: Sequence[float]) -> QualityResult:
        return self.accept(self.evaluate(values))

    def reset(self) -> None:
        self._result = QualityResult()


class QualityWorker:
    """
    Runs quality inference off the frame loop.

    At most one job is in flight: a window submitted while one is running is
    dropped.  Every job is tagged with the session id it was submitted for,
    and :meth:`poll` discards results belonging to any other session.

    Parameters
    ----------
    classifier:
        The session's :class:`QualityClassifier`.
    asynchronous:
        Run jobs on a single background thread.  When *False* jobs run
        inline inside :meth:`submit`.
    """

    def __init__(self, classifier: QualityClassifier, asynchronous: bool = True) -> None:
        self.classifier = classifier
        self._executor: Optional[ThreadPoolExecutor] = (
            ThreadPoolExecutor(max_workers=1, thread_name_prefix="quality")
            if asynchronous else None
        )
        self._pending: Optional[Tuple[int, Future]] = None
        self._ready: Optional[Tuple[int, Optional[QualityResult]]] = None
        self.dropped = 0

    @property
    def busy(self) -> bool:
        return self._pending is not None and not self._pending[1].done()

    def submit(self, values: Sequence[float], session_id: int) -> bool:
        """Queue *values* for assessment; *False* if dropped because busy."""
        self._harvest()
        if self._pending is not None:
            self.dropped += 1
            return False
        if self._executor is None:
            self._ready = (session_id, self.classifier.evaluate(values))
            return True
        future = self._executor.submit(self.classifier.evaluate, tuple(values))
        self._pending = (session_id, future)
        return True

    def poll(self, session_id: int) -> Optional[QualityResult]:
        """Return a finished result for *session_id*, if one is available."""
        self._harvest()
        if self._ready is None:
            return None
        job_session, result = self._ready
        self._ready = None
        if job_session != session_id:
            logger.debug("Discarding quality result from stale session %d.", job_session)
            return None
        return result

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def _harvest(self) -> None:
        if self._pending is None or not self._pending[1].done():
            return
        job_session, future = self._pending
        self._pending = None
        try:
            result = future.result()
        except Exception as exc:  # noqa: BLE001
            logger.warning("Quality job failed: %s", exc)
            result = None
        self._ready = (job_session, result)
