"""Minimal brand visibility scoring for one provider response."""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field

LONG_RESPONSE_CHARS = 500


@dataclass(slots=True)
class ResponseAnalysis:
    score: float
    org_brand_present: bool
    org_brand_prominence: int | None
    brands: list[str] = field(default_factory=list)
    competitors: list[str] = field(default_factory=list)

    @property
    def competitors_count(self) -> int:
        return len(self.competitors)


def analyze_response(
    text: str,
    *,
    brand_names: list[str],
    competitor_names: list[str],
) -> ResponseAnalysis:
    """Score how visible the organization's brand is in ``text``.

    Names match case-insensitively on word boundaries. Prominence is derived
    from where the first brand mention sits in the response (earlier is
    higher, 1-10). Score starts at 6 when the brand is present, gains up to 3
    for prominence and loses up to 2 for a crowded competitor field; an absent
    brand scores 1, or 2 for a long answer.
    """

    brand_positions = _first_positions(text, brand_names)
    brand_keys = {name.casefold() for name in brand_positions}
    competitor_positions = {
        name: position
        for name, position in _first_positions(text, competitor_names).items()
        if name.casefold() not in brand_keys
    }

    brands = sorted(brand_positions, key=brand_positions.__getitem__)
    competitors = sorted(competitor_positions, key=competitor_positions.__getitem__)

    if not brands:
        score = 2.0 if len(text) > LONG_RESPONSE_CHARS else 1.0
        return ResponseAnalysis(
            score=score,
            org_brand_present=False,
            org_brand_prominence=None,
            brands=[],
            competitors=competitors,
        )

    first_position = brand_positions[brands[0]]
    first_pos_ratio = first_position / max(1, len(text))
    prominence = max(1, min(10, math.ceil((1 - first_pos_ratio) * 10)))

    score = 6.0
    if prominence >= 8:
        score += 3
    elif prominence >= 6:
        score += 2
    elif prominence >= 4:
        score += 1

    if len(competitors) > 8:
        score -= 2
    elif len(competitors) > 4:
        score -= 1

    return ResponseAnalysis(
        score=max(1.0, min(10.0, round(score, 1))),
        org_brand_present=True,
        org_brand_prominence=prominence,
        brands=brands,
        competitors=competitors,
    )


def _first_positions(text: str, names: list[str]) -> dict[str, int]:
    positions: dict[str, int] = {}
    seen: set[str] = set()
    for raw_name in names:
        name = raw_name.strip()
        key = name.casefold()
        if not name or key in seen:
            continue
        seen.add(key)
        match = re.search(rf"(?<!\w){re.escape(name)}(?!\w)", text, flags=re.IGNORECASE)
        if match is not None:
            positions[name] = match.start()
    return positions
