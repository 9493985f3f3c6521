"""
Trend-to-Article Generation Scheduler

This package handles:
- Building and refreshing the daily plan of generation jobs
- Deduplicating trend candidates
- Enforcing the upstream trend API quota
- Driving jobs through their lifecycle and recovering stuck ones
- The JSON control endpoints used by cron and operators
"""

from flask import Blueprint

generation_bp = Blueprint('generation', __name__)

from trendwire.generation import routes
