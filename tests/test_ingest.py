"""
Tests for trendwire.generation.ingest module.
"""

import pytest
from datetime import datetime
from unittest.mock import MagicMock, patch

import requests

from trendwire.generation.dedup import title_hash
from trendwire.generation.errors import TrendSourceError
from trendwire.generation.gateway import PersistenceGateway
from trendwire.generation.ingest import (
    HttpTrendSource,
    TrendIngestor,
    TrendSource,
    normalize_trend_item,
    parse_traffic_value,
)
from trendwire.generation.quota import QuotaGovernor
from trendwire.models import TrackedTrend

NOW = datetime(2026, 10, 19, 10, 15)


class StaticSource(TrendSource):
    name = 'static'

    def __init__(self, items=None, error=None):
        self.items = items or []
        self.error = error
        self.calls = 0

    def fetch(self):
        self.calls += 1
        if self.error:
            raise self.error
        return self.items


class TestParsing:

    @pytest.mark.parametrize('raw,expected', [
        ('200K+', 200_000),
        ('1.5M+', 1_500_000),
        ('2,000+', 2000),
        (5000, 5000),
        ('n/a', 0),
        (None, 0),
    ])
    def test_parse_traffic_value(self, raw, expected):
        assert parse_traffic_value(raw) == expected

    def test_normalize_item(self):
        item = normalize_trend_item(
            {'query': ' Prague Marathon ', 'formattedTraffic': '50K+', 'category': 'Sports'},
            default_source='static',
        )
        assert item == {
            'id': title_hash('Prague Marathon'),
            'title': 'Prague Marathon',
            'category': 'sports',
            'search_volume': 50_000,
            'formatted_traffic': '50K+',
            'source': 'static',
        }

    def test_normalize_item_without_title(self):
        assert normalize_trend_item({'title': '!!!'}) is None
        assert normalize_trend_item('not a dict') is None

    def test_default_category(self):
        assert normalize_trend_item({'title': 'Eclipse tonight', 'traffic': 10})['category'] == 'general'


class TestHttpTrendSource:

    def test_dict_payload(self):
        response = MagicMock()
        response.json.return_value = {'trending_searches': [{'title': 'Eclipse tonight'}]}

        with patch('trendwire.generation.ingest.requests.get', return_value=response) as get:
            items = HttpTrendSource('https://trends.example.com/feed', api_key='k', timeout=5).fetch()

        assert items == [{'title': 'Eclipse tonight'}]
        get.assert_called_once_with('https://trends.example.com/feed', params={'api_key': 'k'}, timeout=5)

    def test_network_error(self):
        with patch('trendwire.generation.ingest.requests.get',
                   side_effect=requests.ConnectionError('unreachable')):
            with pytest.raises(TrendSourceError):
                HttpTrendSource('https://trends.example.com/feed').fetch()

    def test_error_payload(self):
        response = MagicMock()
        response.json.return_value = {'error': 'invalid api key'}

        with patch('trendwire.generation.ingest.requests.get', return_value=response):
            with pytest.raises(TrendSourceError):
                HttpTrendSource('https://trends.example.com/feed').fetch()


class TestTrendIngestor:

    @pytest.fixture
    def quota(self, prague_calendar):
        return QuotaGovernor(prague_calendar, weekday_limit=2, weekend_limit=2, monthly_limit=250)

    def test_import_creates_and_refreshes(self, db, quota):
        source = StaticSource([
            {'title': 'Eclipse tonight', 'formatted_traffic': '20K+'},
            {'title': 'eclipse TONIGHT!', 'formatted_traffic': '90K+'},
            {'title': 'Harbour bridge closed', 'traffic': '5K+'},
        ])
        ingestor = TrendIngestor(source, quota, PersistenceGateway())

        result = ingestor.ingest(NOW)

        assert result == {'fetched': True, 'reason': None, 'received': 3, 'created': 2, 'updated': 0}
        assert quota.usage(NOW)['daily_count'] == 1

        source.items = [{'title': 'Eclipse tonight', 'formatted_traffic': '80K+'}]
        later = datetime(2026, 10, 19, 13, 0)
        result = ingestor.ingest(later)

        assert result['updated'] == 1
        trend = db.session.get(TrackedTrend, title_hash('Eclipse tonight'))
        assert trend.search_volume == 80_000
        assert trend.last_seen == later
        assert trend.first_seen == NOW

    def test_quota_spent_skips_fetch(self, db, quota):
        source = StaticSource([{'title': 'Eclipse tonight'}])
        ingestor = TrendIngestor(source, quota, PersistenceGateway())
        quota.record_call(NOW)
        quota.record_call(NOW)

        result = ingestor.ingest(NOW)

        assert result['fetched'] is False
        assert result['reason'] == 'quota_exhausted'
        assert source.calls == 0

    def test_source_error_still_counts_the_call(self, db, quota):
        source = StaticSource(error=TrendSourceError('HTTP 503'))
        ingestor = TrendIngestor(source, quota, PersistenceGateway())

        result = ingestor.ingest(NOW)

        assert result['reason'] == 'source_error'
        assert quota.usage(NOW)['daily_count'] == 1

    def test_empty_feed(self, db, quota):
        result = TrendIngestor(StaticSource([]), quota, PersistenceGateway()).ingest(NOW)
        assert result['reason'] == 'empty_feed'

    def test_no_source(self, db, quota):
        result = TrendIngestor(None, quota, PersistenceGateway()).ingest(NOW)
        assert result['reason'] == 'no_source'
        assert quota.usage(NOW)['daily_count'] == 0
