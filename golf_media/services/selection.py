from __future__ import annotations

import random
from typing import Iterable, List, Protocol

from golf_media.api.v1.schemas import ImageKind, ImageStatus
from golf_media.models.media import HoleImage

# Floor so a heavily downvoted image still shows up now and then.
MIN_WEIGHT = 0.05


class RandomSource(Protocol):
    def random(self) -> float: ...


def image_candidates(images: Iterable[HoleImage]) -> List[HoleImage]:
    """
    Ready still images eligible for display.

    Stylized images win outright: if any exist, originals are not eligible.
    Videos are never candidates.
    """
    ready = [i for i in images if i.status == ImageStatus.READY and i.is_image_content]
    stylized = [i for i in ready if i.kind == ImageKind.STYLIZED]
    return stylized or ready


def selection_weight(image: HoleImage) -> float:
    return max(image.score, MIN_WEIGHT)


def weighted_choice(candidates: List[HoleImage], rng: RandomSource | None = None) -> HoleImage | None:
    """Classic roulette-wheel draw over `selection_weight`."""
    if not candidates:
        return None
    rng = rng or random
    weights = [selection_weight(c) for c in candidates]
    pick = rng.random() * sum(weights)
    for candidate, weight in zip(candidates, weights):
        pick -= weight
        if pick <= 0:
            return candidate
    return candidates[0]


def select_image_for_display(images: Iterable[HoleImage], rng: RandomSource | None = None) -> HoleImage | None:
    """Pick the hole's hero image. Drawn fresh on every call."""
    return weighted_choice(image_candidates(images), rng)


def images_for_display(images: Iterable[HoleImage]) -> List[HoleImage]:
    """Gallery listing: same candidates as selection, newest first."""
    return sorted(image_candidates(images), key=lambda i: (i.created_at, i.id), reverse=True)
