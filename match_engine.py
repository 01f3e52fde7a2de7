"""
Ad detection: score a captured frame against the templates registered for a site.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Type

import cv2

from errors import AdMatchError, StorageError, ValidationError
from grayscale import GrayscaleBuffer, Region, as_grayscale, crop, scale_region
from matcher_base import Matcher
from ncc_matcher import CorrelationMatcher
from phash_matcher import FINGERPRINT_VERSION, PerceptualHashMatcher, fingerprint
from template_store import AdTemplate, TemplateStore, validate_duration

logger = logging.getLogger(__name__)

MATCHERS: Dict[str, Type[Matcher]] = {
    PerceptualHashMatcher.name: PerceptualHashMatcher,
    CorrelationMatcher.name: CorrelationMatcher,
}
DEFAULT_STRATEGY = PerceptualHashMatcher.name
DEFAULT_THRESHOLDS = {name: cls.default_threshold for name, cls in MATCHERS.items()}
DEFAULT_DURATION_MS = 3700


def create_matcher(strategy: str = DEFAULT_STRATEGY) -> Matcher:
    try:
        return MATCHERS[strategy]()
    except KeyError:
        raise ValidationError(
            f"unknown strategy {strategy!r}, expected one of {sorted(MATCHERS)}") from None


@dataclass(frozen=True)
class MatchResult:
    matched: bool
    duration: Optional[int] = None
    template_id: Optional[int] = None
    score: Optional[float] = None

    def to_response(self) -> dict:
        return {
            "adsFound": self.matched,
            "duration": self.duration,
            "adsId": self.template_id,
        }


NO_MATCH = MatchResult(matched=False)


class MatchEngine:
    """
    Scores captures against stored templates with one matching strategy.

    The first template, in store order, whose score strictly exceeds the
    threshold wins; the remaining candidates are not evaluated.

    Args:
        store: Template persistence
        strategy: "phash" (default) or "ncc"
        threshold: Score a candidate must exceed; defaults per strategy
    """

    def __init__(self, store: TemplateStore, strategy: str = DEFAULT_STRATEGY,
                 threshold: Optional[float] = None):
        self.store = store
        self.matcher = create_matcher(strategy)
        self.strategy = strategy
        self.threshold = DEFAULT_THRESHOLDS[strategy] if threshold is None else threshold
        if not 0.0 <= self.threshold <= 1.0:
            raise ValidationError(f"threshold must be in [0, 1], got {self.threshold}")

    # -----------------------------
    # detection
    # -----------------------------
    def match(self, frame, host: str,
              templates: Optional[Iterable[AdTemplate]] = None) -> MatchResult:
        """
        Check a captured frame against the templates of host.

        Args:
            frame: RgbaFrame or GrayscaleBuffer of the full capture
            host: Site host the frame was captured on
            templates: Candidates to use instead of querying the store

        Returns:
            MatchResult of the first candidate over threshold, or a no-match

        Raises:
            ValidationError: the capture itself is malformed
            StorageError: the store could not be queried
        """
        capture = as_grayscale(frame)
        if templates is None:
            templates = self.store.query_by_host(host)

        for template in templates:
            if template.host != host:
                continue
            try:
                score = self._score(template, capture)
            except StorageError:
                raise
            except (AdMatchError, ValueError, cv2.error) as exc:
                logger.warning("Skipping template %s: %s", template.id, exc)
                continue
            logger.debug("Template %s similarity: %.4f", template.id, score)
            if score > self.threshold:
                logger.info("Ad found on %s: template %s (score %.4f), skip %d ms",
                            host, template.id, score, template.duration)
                return MatchResult(True, template.duration, template.id, score)
        return NO_MATCH

    def _score(self, template: AdTemplate, capture: GrayscaleBuffer) -> float:
        search = capture
        if template.region is not None:
            region = scale_region(template.region, template.frame_size, capture.size)
            search = crop(capture, region)
        self.matcher.set_template(template)
        return self.matcher.compute_similarity(search)

    # -----------------------------
    # template management
    # -----------------------------
    def mark_ad(self, frame, host: str, duration: int = DEFAULT_DURATION_MS,
                region: Optional[Region] = None) -> int:
        """
        Register the captured frame, or a region of it, as an ad template.

        Returns:
            Id of the new template
        """
        if not host:
            raise ValidationError("host is required to register a template")
        duration = validate_duration(duration)
        full = as_grayscale(frame)
        image = crop(full, region) if region is not None else full
        template = AdTemplate(
            id=None,
            host=host,
            image=image,
            duration=duration,
            region=region,
            frame_size=full.size if region is not None else None,
            fingerprint=fingerprint(image),
            fingerprint_version=FINGERPRINT_VERSION,
        )
        template_id = self.store.put(template)
        logger.info("Marked ad %s on %s (%dx%d, %d ms)",
                    template_id, host, image.width, image.height, duration)
        return template_id

    def set_duration(self, template_id: int, duration: int) -> None:
        self.store.update_duration(template_id, validate_duration(duration))

    def clean_ads(self, host: str) -> int:
        count = self.store.delete_by_host(host)
        logger.info("Deleted %d ad templates for %s", count, host)
        return count
