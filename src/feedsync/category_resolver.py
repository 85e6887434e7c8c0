"""Classification of feed events into internal activity categories."""

import logging
import re
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .errors import CategoryResolutionError
from .models import (
    CategoryCandidate, CategoryKeywords, CategoryMappingRecord, CategoryResolution, ResolutionReason
)

logger = logging.getLogger(__name__)

NAME_MATCH_CONFIDENCE = 50

DEFAULT_CATEGORY_KEYWORDS: Tuple[CategoryKeywords, ...] = (
    CategoryKeywords(
        category_name='Kamp',
        keywords=('kamp', 'match', 'game', 'turnering', 'tournament', 'finale', 'semifinale',
                  'kvartfinale', 'vs', '-'),
        priority=10,
    ),
    CategoryKeywords(
        category_name='Træning',
        keywords=('træning', 'training', 'practice', 'øvelse', 'drill', 'session'),
        priority=9,
    ),
    CategoryKeywords(
        category_name='Fysisk træning',
        keywords=('fysisk', 'fitness', 'kondition', 'styrke', 'cardio', 'løb', 'gym', 'vægt'),
        priority=8,
    ),
    CategoryKeywords(
        category_name='Taktik',
        keywords=('taktik', 'tactics', 'strategi', 'strategy', 'analyse', 'video', 'gennemgang',
                  'videomøde', 'videomode'),
        priority=8,
    ),
    CategoryKeywords(
        category_name='Møde',
        keywords=('møde', 'mode', 'meeting', 'samtale', 'briefing', 'debriefing', 'evaluering',
                  'forældremøde', 'spillermøde', 'videomøde'),
        priority=7,
    ),
    CategoryKeywords(
        category_name='Holdsamling',
        keywords=('holdsamling', 'team building', 'social', 'sammenkomst', 'event', 'fest'),
        priority=7,
    ),
    CategoryKeywords(
        category_name='Lægebesøg',
        keywords=('læge', 'doctor', 'fysioterapi', 'physio', 'behandling', 'skade', 'injury', 'sundhed'),
        priority=6,
    ),
    CategoryKeywords(
        category_name='Rejse',
        keywords=('rejse', 'travel', 'transport', 'bus', 'fly', 'flight', 'afgang', 'departure'),
        priority=6,
    ),
)


def _normalize(value: Optional[str]) -> str:
    return (value or '').lower().strip()


def build_category_lookups(
    categories: Sequence[CategoryCandidate]
) -> Tuple[Dict[str, CategoryCandidate], Dict[str, CategoryCandidate]]:
    """Index categories by id and by normalized name.

    On a name collision a user-owned category replaces a system one.
    """
    by_id: Dict[str, CategoryCandidate] = {}
    by_name: Dict[str, CategoryCandidate] = {}

    for category in categories:
        by_id[category.id] = category
        name = _normalize(category.name)
        existing = by_name.get(name)
        if existing is None:
            by_name[name] = category
            continue
        existing_is_user = bool(existing.user_id) and not existing.is_system
        incoming_is_user = bool(category.user_id) and not category.is_system
        if incoming_is_user and not existing_is_user:
            by_name[name] = category

    return by_id, by_name


def _keyword_pattern(keyword: str):
    return re.compile(rf"\b{re.escape(keyword)}\b", re.IGNORECASE)


def resolve_category(
    title: str,
    external_categories: Sequence[str],
    categories: Sequence[CategoryCandidate],
    mappings: Sequence[CategoryMappingRecord],
    keyword_table: Sequence[CategoryKeywords] = DEFAULT_CATEGORY_KEYWORDS,
    unknown_category_id: Optional[str] = None
) -> Optional[CategoryResolution]:
    """Resolve a category without any side effects.

    Order: persisted mapping of a feed category, exact then partial feed
    category name, title keywords, category name inside the title. A
    resolution found by feed category name carries ``new_mapping`` for
    the caller to persist. A partial name match never lands on
    ``unknown_category_id``.

    Returns:
        Resolution, or None when the caller should use the Unknown category
    """
    if not categories:
        return None

    by_id, by_name = build_category_lookups(categories)
    externals = [value for value in (external_categories or []) if _normalize(value)]

    if externals and mappings:
        mapping_lookup = {_normalize(m.external_category): m.internal_category_id for m in mappings}
        for external in externals:
            mapped_id = mapping_lookup.get(_normalize(external))
            if mapped_id and mapped_id in by_id:
                return CategoryResolution(
                    category_id=mapped_id,
                    reason=ResolutionReason.EXTERNAL_MAPPING,
                    confidence=100,
                    matched_value=external,
                )

    for external in externals:
        category = by_name.get(_normalize(external))
        if category is not None:
            return CategoryResolution(
                category_id=category.id,
                reason=ResolutionReason.EXTERNAL_NAME_EXACT,
                confidence=95,
                matched_value=external,
                new_mapping=CategoryMappingRecord(
                    external_category=external.strip(), internal_category_id=category.id
                ),
            )

    for external in externals:
        normalized = _normalize(external)
        for name, category in by_name.items():
            if unknown_category_id is not None and str(category.id) == str(unknown_category_id):
                continue
            if name and (name in normalized or normalized in name):
                return CategoryResolution(
                    category_id=category.id,
                    reason=ResolutionReason.EXTERNAL_NAME_PARTIAL,
                    confidence=80,
                    matched_value=external,
                    new_mapping=CategoryMappingRecord(
                        external_category=external.strip(), internal_category_id=category.id
                    ),
                )

    normalized_title = _normalize(title)
    if not normalized_title:
        return None

    # Stable sort keeps table order among equal priorities
    definitions = sorted(keyword_table, key=lambda d: d.priority, reverse=True)
    best: Optional[Tuple[int, CategoryCandidate, str]] = None

    for definition in definitions:
        category = by_name.get(_normalize(definition.category_name))
        if category is None:
            continue
        for keyword in definition.keywords:
            normalized_keyword = _normalize(keyword)
            if not normalized_keyword:
                continue
            if _keyword_pattern(normalized_keyword).search(normalized_title):
                score = definition.priority * 10 + 5
            elif normalized_keyword in normalized_title:
                score = definition.priority * 10
            else:
                continue
            if best is None or score > best[0]:
                best = (score, category, keyword)

    if best is not None:
        score, category, keyword = best
        return CategoryResolution(
            category_id=category.id,
            reason=ResolutionReason.KEYWORD_MATCH,
            confidence=min(100, score),
            matched_value=keyword,
        )

    for name, category in by_name.items():
        if name and name in normalized_title:
            return CategoryResolution(
                category_id=category.id,
                reason=ResolutionReason.NAME_MATCH,
                confidence=NAME_MATCH_CONFIDENCE,
                matched_value=category.name,
            )

    return None


class CategoryResolver:
    """Per-run resolver bound to one user's categories and mappings.

    Always yields a category: anything unresolved, including unexpected
    failures, lands on the Unknown category. Mappings learned by feed
    category name are reused within the run and handed to
    ``on_new_mapping`` for persistence.
    """

    def __init__(
        self,
        categories: Sequence[CategoryCandidate],
        mappings: Sequence[CategoryMappingRecord],
        unknown_category_id: str,
        keyword_table: Sequence[CategoryKeywords] = DEFAULT_CATEGORY_KEYWORDS,
        on_new_mapping: Optional[Callable[[CategoryMappingRecord], None]] = None
    ):
        self.categories = list(categories)
        self.mappings: List[CategoryMappingRecord] = list(mappings)
        self.unknown_category_id = unknown_category_id
        self.keyword_table = tuple(keyword_table)
        self.on_new_mapping = on_new_mapping
        self.logger = logger.getChild('resolver')

    def is_unknown(self, category_id) -> bool:
        return category_id is None or str(category_id) == str(self.unknown_category_id)

    def resolve(self, title: str, external_categories: Sequence[str] = ()) -> CategoryResolution:
        """Resolve a category for an event title and its feed categories."""
        try:
            resolution = resolve_category(
                title, external_categories, self.categories, self.mappings, self.keyword_table,
                unknown_category_id=self.unknown_category_id
            )
        except Exception as e:
            error = CategoryResolutionError(f"Failed to resolve category for '{title}': {e}")
            self.logger.warning(f"{error}; using Unknown")
            return self._unknown()

        if resolution is None:
            return self._unknown()

        if resolution.new_mapping is not None:
            self._remember(resolution.new_mapping)

        self.logger.debug(
            f"'{title}' -> {resolution.category_id} ({resolution.reason.value}, {resolution.matched_value})"
        )
        return resolution

    def _unknown(self) -> CategoryResolution:
        return CategoryResolution(category_id=self.unknown_category_id, reason=ResolutionReason.UNKNOWN)

    def _remember(self, mapping: CategoryMappingRecord) -> None:
        key = _normalize(mapping.external_category)
        if any(_normalize(m.external_category) == key for m in self.mappings):
            return
        self.mappings.append(mapping)
        if self.on_new_mapping is None:
            return
        try:
            self.on_new_mapping(mapping)
        except Exception as e:
            self.logger.warning(f"Could not persist category mapping '{mapping.external_category}': {e}")
