"""
Base class for ad template similarity computation.
"""

from abc import ABC, abstractmethod
from typing import Optional

from grayscale import GrayscaleBuffer


class Matcher(ABC):
    """
    Abstract base class for scoring a captured region against an ad template.

    Subclasses implement compute_similarity to provide the different
    matching strategies (perceptual hash, normalized cross-correlation).
    A matcher holds at most one reference at a time and keeps no other
    state between calls.
    """

    name = ""
    default_threshold = 1.0

    def __init__(self):
        """Initialize the matcher."""
        self.ref: Optional[GrayscaleBuffer] = None

    @abstractmethod
    def compute_similarity(self, frame: GrayscaleBuffer) -> float:
        """
        Compute similarity score between the reference template and the given capture.

        Args:
            frame: Captured region in grayscale

        Returns:
            Similarity score in range [0.0, 1.0], where 1.0 means perfect match
        """

    def set_reference(self, ref: GrayscaleBuffer) -> None:
        """
        Set the reference (template) image for comparison.

        Args:
            ref: Template image in grayscale
        """
        self.ref = ref

    def set_template(self, template) -> None:
        """Set the reference from a stored AdTemplate record."""
        self.set_reference(template.image)

    def score(self, reference: GrayscaleBuffer, capture: GrayscaleBuffer) -> float:
        self.set_reference(reference)
        return self.compute_similarity(capture)
