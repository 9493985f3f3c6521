"""
Pytest configuration and shared fixtures.
"""

import pytest
import os
import sys
from datetime import datetime

# Add the project root to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Set DATABASE_URL before Config class is imported (it validates at class-definition time)
os.environ.setdefault('DATABASE_URL', 'sqlite:///:memory:')


@pytest.fixture
def app():
    """Create application for testing."""
    from trendwire import create_app
    app = create_app('testing')
    return app


@pytest.fixture
def app_context(app):
    """Application context for testing."""
    with app.app_context():
        yield


@pytest.fixture
def db(app, app_context):
    """Database for testing."""
    from trendwire import db as _db

    _db.create_all()
    yield _db
    _db.session.remove()
    _db.drop_all()


@pytest.fixture
def client(app, db):
    """Flask test client with database tables created."""
    return app.test_client()


@pytest.fixture
def prague_calendar():
    from trendwire.lib.calendar import OperatingCalendar
    return OperatingCalendar('Europe/Prague')


def _make_trend(title, search_volume, first_seen=None, category='technology', trend_id=None):
    """Unsaved TrackedTrend with every field the scheduler reads filled in."""
    from trendwire.generation.dedup import title_hash
    from trendwire.models import TrackedTrend
    seen = first_seen or datetime(2026, 10, 19, 6, 0)
    return TrackedTrend(
        id=trend_id or title_hash(title),
        title=title,
        category=category,
        search_volume=search_volume,
        formatted_traffic=f'{search_volume}+',
        source='test',
        first_seen=seen,
        last_seen=seen,
        article_generated=False,
    )


@pytest.fixture
def make_trend():
    return _make_trend


@pytest.fixture
def monday_noon():
    """Monday 2026-10-19 12:15 in Prague (CEST, UTC+2), as naive UTC."""
    return datetime(2026, 10, 19, 10, 15)
