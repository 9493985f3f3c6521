"""
Trend Deduplication

Two-tier filter that keeps the same story from being scheduled twice:

1. Exact tier: identical normalized-title hashes are rejected outright.
2. Fuzzy tier: normalized Levenshtein similarity against every recently
   processed or already queued title, and against candidates accepted
   earlier in the same pass. At or above the threshold the candidate is a
   duplicate.

Known entries always win. Among candidates in one batch the higher-traffic
one survives, so a lower-traffic near-duplicate is never re-added.
"""

import hashlib
import logging
import re
from datetime import datetime
from typing import Iterable, List, Optional, Sequence

from rapidfuzz.distance import Levenshtein

from trendwire.generation.constants import DUPLICATE_SIMILARITY_THRESHOLD, TREND_ID_LENGTH

logger = logging.getLogger(__name__)

_PUNCTUATION_RE = re.compile(r'[^\w\s]', re.UNICODE)
_WHITESPACE_RE = re.compile(r'\s+')


def normalize_title(title: Optional[str]) -> str:
    """Lowercase, strip punctuation and collapse whitespace."""
    if not title:
        return ''
    text = _PUNCTUATION_RE.sub(' ', str(title).lower())
    # Underscore counts as a word character for \w
    text = text.replace('_', ' ')
    return _WHITESPACE_RE.sub(' ', text).strip()


def title_hash(title: Optional[str]) -> str:
    """Stable trend id derived from the normalized title."""
    normalized = normalize_title(title)
    return hashlib.sha1(normalized.encode('utf-8')).hexdigest()[:TREND_ID_LENGTH]


def similarity(a: str, b: str) -> float:
    """Normalized Levenshtein similarity in [0, 1] of two already-normalized strings."""
    return Levenshtein.normalized_similarity(a, b)


def _rank_key(item, index):
    volume = getattr(item, 'search_volume', None) or 0
    first_seen = getattr(item, 'first_seen', None) or datetime.max
    return (-volume, first_seen, index)


class TrendDeduplicator:
    """
    Filters trend candidates against known topics and against each other.

    Args:
        threshold: Similarity at or above which two titles are duplicates
    """

    def __init__(self, threshold: float = DUPLICATE_SIMILARITY_THRESHOLD):
        if not 0 < threshold <= 1:
            raise ValueError(f"Similarity threshold must be in (0, 1], got {threshold}")
        self.threshold = threshold

    def is_similar(self, normalized_a: str, normalized_b: str) -> bool:
        return similarity(normalized_a, normalized_b) >= self.threshold

    def find_match(self, normalized: str, pool: Iterable[str]) -> Optional[str]:
        for existing in pool:
            if self.is_similar(normalized, existing):
                return existing
        return None

    def filter_new(self, candidates: Sequence, known_recent: Sequence = ()) -> List:
        """
        Return the candidates that are neither duplicates of known_recent
        nor of a higher-ranked candidate, in their original order.
        """
        known_hashes = set()
        known_norms = []
        for item in known_recent:
            norm = normalize_title(getattr(item, 'title', None))
            known_hashes.add(title_hash(norm))
            if getattr(item, 'id', None):
                known_hashes.add(item.id)
            if norm:
                known_norms.append(norm)

        accepted_indexes = []
        accepted_hashes = set()
        accepted_norms = []
        exact_dropped = 0
        fuzzy_dropped = 0

        order = sorted(range(len(candidates)), key=lambda i: _rank_key(candidates[i], i))
        for index in order:
            candidate = candidates[index]
            norm = normalize_title(getattr(candidate, 'title', None))
            if not norm:
                logger.debug(f"Skipping candidate without a usable title: {candidate!r}")
                continue

            digest = title_hash(norm)
            candidate_id = getattr(candidate, 'id', None) or digest
            if (digest in known_hashes or candidate_id in known_hashes
                    or digest in accepted_hashes or candidate_id in accepted_hashes):
                exact_dropped += 1
                continue

            match = self.find_match(norm, known_norms) or self.find_match(norm, accepted_norms)
            if match is not None:
                fuzzy_dropped += 1
                logger.debug(f"Dropping near-duplicate '{candidate.title}' (matches '{match}')")
                continue

            accepted_indexes.append(index)
            accepted_hashes.update({digest, candidate_id})
            accepted_norms.append(norm)

        if exact_dropped or fuzzy_dropped:
            logger.info(
                f"Deduplication: {len(candidates)} candidates -> {len(accepted_indexes)} kept "
                f"({exact_dropped} exact, {fuzzy_dropped} near-duplicate)"
            )

        return [candidates[i] for i in sorted(accepted_indexes)]
