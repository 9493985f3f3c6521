from trendwire import db
from trendwire.lib.time import utcnow_naive, isoformat_or_none
from sqlalchemy.orm import validates


# Job lifecycle states
JOB_PENDING = 'pending'
JOB_GENERATING = 'generating'
JOB_QUALITY_CHECK = 'quality_check'
JOB_COMPLETED = 'completed'
JOB_FAILED = 'failed'
JOB_REJECTED = 'rejected'

JOB_STATUSES = (
    JOB_PENDING,
    JOB_GENERATING,
    JOB_QUALITY_CHECK,
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_REJECTED,
)


class TrackedTrend(db.Model):
    """
    A candidate topic surfaced by the trend feed.

    The id is the stable hash of the normalized title, so re-ingesting the
    same topic lands on the same row.
    """
    __tablename__ = 'tracked_trend'

    id = db.Column(db.String(32), primary_key=True)
    title = db.Column(db.String(300), nullable=False)
    category = db.Column(db.String(100), nullable=False, default='general')
    search_volume = db.Column(db.Integer, nullable=False, default=0)
    formatted_traffic = db.Column(db.String(50))
    source = db.Column(db.String(100), nullable=False, default='unknown')
    first_seen = db.Column(db.DateTime, nullable=False, default=utcnow_naive)
    last_seen = db.Column(db.DateTime, nullable=False, default=utcnow_naive)
    article_generated = db.Column(db.Boolean, nullable=False, default=False)
    article_id = db.Column(db.Integer)
    article_generated_at = db.Column(db.DateTime)

    __table_args__ = (
        db.Index('idx_tracked_trend_generated_seen', 'article_generated', 'last_seen'),
    )

    def __repr__(self):
        return f'<TrackedTrend {self.id} "{self.title}" vol={self.search_volume}>'

    def to_dict(self):
        return {
            'id': self.id,
            'title': self.title,
            'category': self.category,
            'search_volume': self.search_volume,
            'formatted_traffic': self.formatted_traffic,
            'source': self.source,
            'first_seen': isoformat_or_none(self.first_seen),
            'last_seen': isoformat_or_none(self.last_seen),
            'article_generated': self.article_generated,
            'article_id': self.article_id,
        }


class DailyPlan(db.Model):
    """The day's schedule of generation jobs, one row per operating-calendar date."""
    __tablename__ = 'daily_plan'

    date = db.Column(db.String(10), primary_key=True)  # YYYY-MM-DD, operating timezone
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow_naive)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow_naive)

    jobs = db.relationship(
        'GenerationJob',
        backref='plan',
        order_by='GenerationJob.position',
        cascade='all, delete-orphan',
    )

    def __repr__(self):
        return f'<DailyPlan {self.date} jobs={len(self.jobs)}>'

    def job_at(self, position):
        for job in self.jobs:
            if job.position == position:
                return job
        return None

    def status_counts(self):
        counts = {status: 0 for status in JOB_STATUSES}
        for job in self.jobs:
            counts[job.status] = counts.get(job.status, 0) + 1
        return counts

    def to_dict(self, include_jobs=True):
        data = {
            'date': self.date,
            'created_at': isoformat_or_none(self.created_at),
            'updated_at': isoformat_or_none(self.updated_at),
            'total_jobs': len(self.jobs),
            'counts': self.status_counts(),
        }
        if include_jobs:
            data['jobs'] = [job.to_dict() for job in sorted(self.jobs, key=lambda j: j.position)]
        return data


class GenerationJob(db.Model):
    """
    One scheduled attempt to turn a trend into an article.

    Status changes go through JobStateMachine; the pending -> generating
    edge is an atomic compare-and-set in the persistence gateway.
    """
    __tablename__ = 'generation_job'

    id = db.Column(db.String(64), primary_key=True)
    plan_date = db.Column(db.String(10), db.ForeignKey('daily_plan.date'), nullable=False, index=True)
    trend_id = db.Column(db.String(32), db.ForeignKey('tracked_trend.id'), nullable=False)
    position = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(20), nullable=False, default=JOB_PENDING)
    scheduled_at = db.Column(db.DateTime, nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow_naive)
    started_at = db.Column(db.DateTime)
    completed_at = db.Column(db.DateTime)
    error = db.Column(db.Text)
    article_id = db.Column(db.Integer)
    quality_score = db.Column(db.Float)
    retry_count = db.Column(db.Integer, nullable=False, default=0)

    trend = db.relationship('TrackedTrend', lazy='joined')

    __table_args__ = (
        db.UniqueConstraint('plan_date', 'position', name='uq_generation_job_plan_position'),
        db.Index('idx_generation_job_status_started', 'status', 'started_at'),
    )

    @validates('status')
    def validate_status(self, key, value):
        if value not in JOB_STATUSES:
            raise ValueError(f"Unknown job status: {value!r}")
        return value

    @staticmethod
    def make_id(plan_date, position):
        return f'job_{plan_date}_{position}'

    def __repr__(self):
        return f'<GenerationJob #{self.position} {self.status} trend={self.trend_id}>'

    def to_dict(self):
        return {
            'id': self.id,
            'plan_date': self.plan_date,
            'position': self.position,
            'trend_id': self.trend_id,
            'title': self.trend.title if self.trend else None,
            'status': self.status,
            'scheduled_at': isoformat_or_none(self.scheduled_at),
            'created_at': isoformat_or_none(self.created_at),
            'started_at': isoformat_or_none(self.started_at),
            'completed_at': isoformat_or_none(self.completed_at),
            'error': self.error,
            'article_id': self.article_id,
            'quality_score': self.quality_score,
            'retry_count': self.retry_count,
        }


class QuotaUsage(db.Model):
    """Call counter for one day or month bucket of the upstream trend API."""
    __tablename__ = 'quota_usage'

    bucket = db.Column(db.String(20), primary_key=True)  # 'day:2026-10-19' / 'month:2026-10'
    period = db.Column(db.String(10), nullable=False)  # 'day' or 'month'
    period_key = db.Column(db.String(10), nullable=False)
    count = db.Column(db.Integer, nullable=False, default=0)
    ceiling = db.Column(db.Integer, nullable=False)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow_naive)

    __table_args__ = (
        db.CheckConstraint('count <= ceiling', name='ck_quota_usage_within_ceiling'),
        db.Index('idx_quota_usage_period_key', 'period', 'period_key'),
    )

    @property
    def remaining(self):
        return max(self.ceiling - self.count, 0)

    def __repr__(self):
        return f'<QuotaUsage {self.bucket} {self.count}/{self.ceiling}>'


class SchedulerRunState(db.Model):
    """
    Whether the generation scheduler is switched on.

    Single row (id=1). The database copy is authoritative; the cached copy is
    only consulted when the database cannot be read.
    """
    __tablename__ = 'scheduler_run_state'

    SINGLETON_ID = 1

    id = db.Column(db.Integer, primary_key=True)
    is_running = db.Column(db.Boolean, nullable=False, default=True)
    started_at = db.Column(db.DateTime)
    stopped_at = db.Column(db.DateTime)
    last_tick_at = db.Column(db.DateTime)
    last_tick_status = db.Column(db.String(40))
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow_naive)

    def to_dict(self):
        return {
            'is_running': self.is_running,
            'started_at': isoformat_or_none(self.started_at),
            'stopped_at': isoformat_or_none(self.stopped_at),
            'last_tick_at': isoformat_or_none(self.last_tick_at),
            'last_tick_status': self.last_tick_status,
            'updated_at': isoformat_or_none(self.updated_at),
        }


class Article(db.Model):
    """Generated article as handed back by the content generator."""
    __tablename__ = 'article'

    id = db.Column(db.Integer, primary_key=True)
    slug = db.Column(db.String(200), nullable=False, unique=True)
    title = db.Column(db.String(300), nullable=False)
    body = db.Column(db.Text, nullable=False)
    category = db.Column(db.String(100))
    trend_id = db.Column(db.String(32), db.ForeignKey('tracked_trend.id'))
    quality_score = db.Column(db.Float)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow_naive)

    def __repr__(self):
        return f'<Article {self.id} {self.slug}>'
