"""
Normalized cross-correlation ad template matcher.
Slides the template over every position of the search image. Kept as the
legacy strategy; far too slow for per-frame polling on large captures.
"""

import logging
from typing import NamedTuple

import numpy as np
from skimage.util import view_as_windows

from errors import PreconditionError
from grayscale import GrayscaleBuffer
from matcher_base import Matcher

logger = logging.getLogger(__name__)


class CorrelationResult(NamedTuple):
    x: int
    y: int
    confidence: float

    @property
    def valid(self) -> bool:
        return self.x >= 0 and self.y >= 0


NO_MATCH = CorrelationResult(-1, -1, 0.0)


def correlation_map(template: np.ndarray, search: np.ndarray) -> np.ndarray:
    """
    Compute sum(T*S) / sqrt(sum(T^2) * sum(S^2)) for every template position.

    Args:
        template: (th, tw) grayscale template
        search: (sh, sw) grayscale search image, sh >= th and sw >= tw

    Returns:
        (sh - th + 1, sw - tw + 1) array of correlations; -1.0 where either
        the template or the search window has zero energy
    """
    t = template.astype(np.float64)
    s = search.astype(np.float64)
    windows = view_as_windows(s, t.shape)

    numerator = np.einsum("ijkl,kl->ij", windows, t)
    window_energy = np.einsum("ijkl,ijkl->ij", windows, windows)
    denominator = np.sqrt(window_energy * float(np.sum(t * t)))

    corr = np.full(numerator.shape, -1.0)
    np.divide(numerator, denominator, out=corr, where=denominator > 0)
    return corr


def correlate(template: GrayscaleBuffer, search: GrayscaleBuffer) -> CorrelationResult:
    """
    Find the best-aligned position of template inside search.

    Args:
        template: Template image (tw x th)
        search: Search image (sw x sh)

    Returns:
        CorrelationResult with the top-left offset of the best window and
        confidence = (max_correlation + 1) / 2. When the search image is
        smaller than the template, returns (-1, -1, 0.0).
    """
    if search.width < template.width or search.height < template.height:
        logger.warning("Search image %dx%d is smaller than template %dx%d",
                       search.width, search.height, template.width, template.height)
        return NO_MATCH

    corr = correlation_map(template.as_array(), search.as_array())
    # argmax returns the first maximum in row-major order
    y, x = np.unravel_index(int(np.argmax(corr)), corr.shape)
    best = float(corr[y, x])
    confidence = min(1.0, max(0.0, (best + 1.0) / 2.0))
    return CorrelationResult(int(x), int(y), confidence)


class CorrelationMatcher(Matcher):
    """
    Matcher using exhaustive normalized cross-correlation.

    The reference is the template, the frame is the search image; the score
    is the correlation confidence of the best-aligned window.
    MatchEngine crops the search image to the template region, so there the
    offset search only comes into play when the region was rescaled.
    """

    name = "ncc"
    default_threshold = 0.8

    def __init__(self):
        super().__init__()
        self.last_result = NO_MATCH

    def compute_similarity(self, frame: GrayscaleBuffer) -> float:
        """
        Compute similarity as the best correlation confidence.

        Args:
            frame: Captured region in grayscale (search image)

        Returns:
            Confidence [0.0, 1.0]

        Raises:
            PreconditionError: frame is smaller than the template
        """
        if self.ref is None:
            return 0.0

        self.last_result = correlate(self.ref, frame)
        if not self.last_result.valid:
            raise PreconditionError(
                f"search image {frame.width}x{frame.height} smaller than "
                f"template {self.ref.width}x{self.ref.height}")
        return self.last_result.confidence
