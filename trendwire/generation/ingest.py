"""
Trend ingestion.

Pulls trending topics from the upstream trend API and records them as
TrackedTrend rows. Every upstream call is gated by the QuotaGovernor; when the
budget is spent the import is skipped and the scheduler keeps planning from
the trends already stored.
"""

import logging
import re
from datetime import datetime
from typing import Dict, List, Optional

import requests

from trendwire.generation.constants import DEFAULT_CATEGORY
from trendwire.generation.dedup import normalize_title, title_hash
from trendwire.generation.errors import QuotaExceededError, TrendSourceError
from trendwire.generation.quota import QuotaGovernor
from trendwire.lib.time import to_utc_naive

logger = logging.getLogger(__name__)

_TRAFFIC_NUMBER_RE = re.compile(r'^(\d+(?:\.\d+)?)')

# Cap on how many topics one import may add
MAX_TOPICS_PER_IMPORT = 50


def parse_traffic_value(value) -> int:
    """
    Convert formatted traffic such as '200K+', '1.5M+' or '2,000+' to a number.

    Unparseable values count as 0.
    """
    if value is None:
        return 0
    if isinstance(value, (int, float)):
        return max(int(value), 0)

    cleaned = re.sub(r'[+,\s]', '', str(value)).lower()
    match = _TRAFFIC_NUMBER_RE.match(cleaned)
    if not match:
        return 0
    number = float(match.group(1))
    if 'm' in cleaned:
        number *= 1_000_000
    elif 'k' in cleaned:
        number *= 1_000
    return int(number)


def normalize_trend_item(item: Dict, default_source: str = 'unknown') -> Optional[Dict]:
    """Map one raw feed item onto TrackedTrend fields; None when it has no usable title."""
    if not isinstance(item, dict):
        return None
    title = (item.get('title') or item.get('query') or '').strip()
    if not normalize_title(title):
        return None

    formatted = item.get('formatted_traffic') or item.get('formattedTraffic')
    volume = item.get('search_volume')
    if volume is None:
        volume = item.get('traffic')
    search_volume = parse_traffic_value(volume) if volume is not None else parse_traffic_value(formatted)

    return {
        'id': title_hash(title),
        'title': title[:300],
        'category': (item.get('category') or DEFAULT_CATEGORY).strip().lower()[:100],
        'search_volume': search_volume,
        'formatted_traffic': str(formatted)[:50] if formatted else None,
        'source': (item.get('source') or default_source)[:100],
    }


class TrendSource:
    """Interface for anything that can list trending topics."""

    name = 'unknown'

    def fetch(self) -> List[Dict]:
        raise NotImplementedError


class HttpTrendSource(TrendSource):
    """
    JSON trend feed over HTTP.

    Accepts a bare list of items, or an object carrying the list under
    'trending_searches' or 'trends'.
    """

    name = 'http'

    def __init__(self, url: str, api_key: Optional[str] = None, timeout: int = 30,
                 params: Optional[Dict] = None):
        self.url = url
        self.api_key = api_key
        self.timeout = timeout
        self.params = params or {}

    def fetch(self) -> List[Dict]:
        """
        Raises:
            TrendSourceError: network error, non-2xx status or unreadable body
        """
        params = dict(self.params)
        if self.api_key:
            params['api_key'] = self.api_key

        try:
            response = requests.get(self.url, params=params, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except requests.RequestException as e:
            raise TrendSourceError(f"Trend feed request failed: {e}") from e
        except ValueError as e:
            raise TrendSourceError(f"Trend feed returned invalid JSON: {e}") from e

        if isinstance(data, list):
            return data
        if isinstance(data, dict):
            if data.get('error'):
                raise TrendSourceError(f"Trend feed error: {data['error']}")
            return data.get('trending_searches') or data.get('trends') or []
        raise TrendSourceError(f"Unexpected trend feed payload type: {type(data).__name__}")


class TrendIngestor:
    """
    Args:
        source: TrendSource to pull from; None disables upstream imports
        quota: QuotaGovernor guarding the upstream budget
        gateway: PersistenceGateway that stores the trends
    """

    def __init__(self, source: Optional[TrendSource], quota: QuotaGovernor, gateway,
                 max_topics: int = MAX_TOPICS_PER_IMPORT):
        self.source = source
        self.quota = quota
        self.gateway = gateway
        self.max_topics = max_topics

    def _skipped(self, reason: str, **extra) -> Dict:
        logger.info(f"Trend import skipped ({reason}), planning from stored trends")
        result = {'fetched': False, 'reason': reason, 'received': 0, 'created': 0, 'updated': 0}
        result.update(extra)
        return result

    def ingest(self, now: Optional[datetime] = None) -> Dict:
        """
        Import one batch of trends.

        Returns a summary dict; fetched is False whenever no new data was
        stored (no source, quota spent, feed failure or empty feed).

        Raises:
            PersistenceUnavailableError: quota counters or trends could not be written
        """
        now = to_utc_naive(now)
        if self.source is None:
            return self._skipped('no_source')

        if not self.quota.can_call(now):
            return self._skipped('quota_exhausted')
        try:
            self.quota.record_call(now)
        except QuotaExceededError:
            return self._skipped('quota_exhausted')

        try:
            raw_items = self.source.fetch()
        except TrendSourceError as e:
            logger.warning(f"Trend import from {self.source.name} failed: {e}")
            return self._skipped('source_error', error=str(e))

        items = []
        seen_ids = set()
        for raw in raw_items[:self.max_topics]:
            item = normalize_trend_item(raw, default_source=self.source.name)
            if item is None or item['id'] in seen_ids:
                continue
            seen_ids.add(item['id'])
            items.append(item)

        if not items:
            return self._skipped('empty_feed', received=len(raw_items))

        created, updated = self.gateway.upsert_trends(items, now)
        logger.info(
            f"Imported {len(items)} trends from {self.source.name}: {created} new, {updated} refreshed"
        )
        return {
            'fetched': True,
            'reason': None,
            'received': len(raw_items),
            'created': created,
            'updated': updated,
        }
