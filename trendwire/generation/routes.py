"""
Control endpoints for the generation scheduler.

Every endpoint answers JSON. When CRON_SECRET is configured each request must
carry it as a Bearer token.
"""

import logging

from flask import jsonify, request

from trendwire.api.errors import api_error
from trendwire.api.security import cron_secret_required
from trendwire.generation import generation_bp

logger = logging.getLogger(__name__)


def _driver():
    from trendwire.generation.driver import get_driver
    return get_driver()


def _force_flag():
    payload = request.get_json(silent=True) or {}
    value = payload.get('force', request.args.get('force', False))
    if isinstance(value, str):
        return value.strip().lower() in ('1', 'true', 'yes')
    return bool(value)


@generation_bp.route('/tick', methods=['POST'])
@cron_secret_required
def tick():
    """Cron entry point. Always 200 unless the driver itself errored."""
    result = _driver().tick(force=_force_flag())
    status_code = 500 if result['status'] == 'error' else 200
    return jsonify({'success': status_code == 200, **result}), status_code


@generation_bp.route('/refresh', methods=['POST'])
@cron_secret_required
def refresh():
    result = _driver().refresh_plan()
    return jsonify({'success': True, **result})


@generation_bp.route('/ingest', methods=['POST'])
@cron_secret_required
def ingest():
    result = _driver().ingest_trends()
    return jsonify({'success': True, **result})


@generation_bp.route('/reset-failed-jobs', methods=['POST'])
@cron_secret_required
def reset_failed_jobs():
    result = _driver().reset_failed_jobs()
    return jsonify({'success': True, **result})


@generation_bp.route('/reset-stuck-job', methods=['POST'])
@cron_secret_required
def reset_stuck_job():
    payload = request.get_json(silent=True) or {}
    position = payload.get('position')
    if position is None:
        return api_error('invalid_position', 'position is required.', 400)
    # bool is an int subclass
    if isinstance(position, bool) or not isinstance(position, (int, str)):
        return api_error('invalid_position', 'position must be an integer.', 400)
    try:
        position = int(position)
    except ValueError:
        return api_error('invalid_position', 'position must be an integer.', 400)
    if position < 1:
        return api_error('invalid_position', 'position must be 1 or greater.', 400)

    result = _driver().reset_stuck_job(position)
    return jsonify({'success': True, **result})


@generation_bp.route('/status', methods=['GET'])
@cron_secret_required
def status():
    result = _driver().get_status()
    return jsonify({'success': True, **result})


@generation_bp.route('/start', methods=['POST'])
@cron_secret_required
def start():
    result = _driver().start()
    return jsonify({'success': True, **result})


@generation_bp.route('/stop', methods=['POST'])
@cron_secret_required
def stop():
    result = _driver().stop()
    return jsonify({'success': True, **result})
