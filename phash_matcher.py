"""
Perceptual hash based ad template matcher.
Computes similarity using only the Hamming distance of 64-bit average hashes.
"""

import logging
from typing import Optional

import cv2
import numpy as np

from errors import ValidationError
from grayscale import GrayscaleBuffer
from matcher_base import Matcher

logger = logging.getLogger(__name__)

HASH_SIDE = 8
HASH_BITS = HASH_SIDE * HASH_SIDE
HASH_MASK = (1 << HASH_BITS) - 1

# Names the resampling filter. Fingerprints cached under another version
# are recomputed from the stored pixels.
FINGERPRINT_VERSION = "ahash-8x8-area-v1"


def fingerprint(image: GrayscaleBuffer) -> int:
    """
    Compute the 64-bit average hash of a grayscale image.

    The image is resampled to 8x8 with area interpolation; bit (63 - i) is
    set iff pixel i (row-major) is strictly brighter than the 8x8 mean.
    A uniform image therefore always hashes to 0.

    Args:
        image: Grayscale image of any size

    Returns:
        64-bit hash as integer
    """
    small = cv2.resize(image.as_array(), (HASH_SIDE, HASH_SIDE), interpolation=cv2.INTER_AREA)
    avg = float(small.astype(np.float64).mean())
    bits = (small > avg).astype(np.uint8).flatten()

    h = 0
    for b in bits:
        h = (h << 1) | int(b)
    return h


def _check_hash(h: int) -> int:
    if not 0 <= h <= HASH_MASK:
        raise ValidationError(f"fingerprint out of 64-bit range: {h}")
    return h


def hamming_distance_64(a: int, b: int) -> int:
    """
    Compute Hamming distance between two 64-bit hashes.

    Args:
        a: First hash
        b: Second hash

    Returns:
        Hamming distance (number of differing bits)
    """
    return (_check_hash(a) ^ _check_hash(b)).bit_count()


def similarity(a: int, b: int) -> float:
    """Similarity = 1.0 - (hamming_distance / 64.0), in [0.0, 1.0]."""
    return 1.0 - hamming_distance_64(a, b) / HASH_BITS


def fingerprint_to_hex(h: int) -> str:
    return f"{_check_hash(h):016x}"


def fingerprint_from_hex(text: str) -> int:
    try:
        return _check_hash(int(text, 16))
    except ValueError:
        raise ValidationError(f"not a hex fingerprint: {text!r}") from None


class PerceptualHashMatcher(Matcher):
    """
    Matcher using the 64-bit average hash only.

    Computes similarity as inverse of normalized Hamming distance.
    Similarity = 1.0 - (hamming_distance / 64.0)
    """

    name = "phash"
    default_threshold = 0.95

    def __init__(self):
        super().__init__()
        self.ref_hash: Optional[int] = None
        self.hamming_distance: Optional[int] = None

    def set_reference(self, ref: GrayscaleBuffer) -> None:
        """
        Set the reference image and compute its hash.

        Args:
            ref: Template image in grayscale
        """
        super().set_reference(ref)
        self.ref_hash = fingerprint(ref) if ref is not None else None

    def set_template(self, template) -> None:
        """Use the template's cached fingerprint when it was made by the current filter."""
        cached = getattr(template, "fingerprint", None)
        if cached is not None and template.fingerprint_version == FINGERPRINT_VERSION:
            self.ref = template.image
            self.ref_hash = _check_hash(cached)
            return
        if cached is not None:
            logger.debug("Template %s fingerprint is %s, recomputing",
                         template.id, template.fingerprint_version)
        self.set_reference(template.image)

    def compute_similarity(self, frame: GrayscaleBuffer) -> float:
        """
        Compute similarity using the hash Hamming distance.

        Args:
            frame: Captured region in grayscale

        Returns:
            Similarity score [0.0, 1.0]
        """
        if self.ref_hash is None:
            return 0.0

        frame_hash = fingerprint(frame)
        self.hamming_distance = hamming_distance_64(frame_hash, self.ref_hash)
        return 1.0 - self.hamming_distance / HASH_BITS
