"""
Home Bridge - Operator API
Local JSON endpoints for bridge status and starting proactive dialogues.
"""

from flask import Flask, request, jsonify
import asyncio
import concurrent.futures
import logging
import threading

from constants import DASHBOARD_CALL_TIMEOUT, USER_FRIENDLY_ERRORS
from errors import AlreadyActive, BackendUnavailable, InvalidArgument, NotFound

app = Flask(__name__)

# Shared state (set by main.py)
bridges = {}
event_loop = None


def _bridge_info(bridge) -> dict:
    channels = bridge.text_channels
    return {
        'platform': bridge.name,
        'running': bridge.is_running,
        'channels': len(channels),
        'users': sum(len(c.users) for c in channels),
        'dialogue_remaining': bridge.dialogue.remaining,
    }


@app.route('/api/status')
def api_status():
    """Status of every bridge."""
    return jsonify({'bridges': [_bridge_info(b) for b in bridges.values()]})


@app.route('/api/channels/<platform>')
def api_channels(platform):
    """Cached channels and users of one platform."""
    bridge = bridges.get(platform)
    if bridge is None:
        return jsonify({'error': f'unknown platform {platform}'}), 404
    return jsonify({'channels': [c.to_dict() for c in bridge.text_channels]})


@app.route('/api/dialogue', methods=['POST'])
def api_dialogue():
    """Start a proactive dialogue: {platform, channel_id, user_id, count}."""
    data = request.get_json(silent=True) or {}
    bridge = bridges.get(data.get('platform'))
    if bridge is None:
        return jsonify({'error': 'unknown platform'}), 404
    if event_loop is None:
        return jsonify({'error': 'bridge not running'}), 503

    try:
        channel_id = bridge.platform.parse_id(str(data['channel_id']))
        user_id = bridge.platform.parse_id(str(data['user_id']))
        count = int(data.get('count', 5))
    except (KeyError, TypeError, ValueError):
        return jsonify({'error': USER_FRIENDLY_ERRORS['invalid']}), 400

    future = asyncio.run_coroutine_threadsafe(
        bridge.start_proactive_dialogue(channel_id, user_id, count), event_loop
    )
    try:
        sent = future.result(timeout=DASHBOARD_CALL_TIMEOUT)
    except AlreadyActive:
        return jsonify({'error': USER_FRIENDLY_ERRORS['already_active']}), 409
    except NotFound:
        return jsonify({'error': USER_FRIENDLY_ERRORS['not_found']}), 404
    except InvalidArgument:
        return jsonify({'error': USER_FRIENDLY_ERRORS['invalid']}), 400
    except BackendUnavailable:
        return jsonify({'error': USER_FRIENDLY_ERRORS['unavailable']}), 503
    except concurrent.futures.TimeoutError:
        future.cancel()
        return jsonify({'error': 'timed out'}), 504

    return jsonify({'started': True, 'opening_sent': bool(sent), 'count': count})


# --- Runner ---

def start_dashboard(bridge_list=None, loop=None, host='127.0.0.1', port=5000):
    """Start the API in a background thread."""
    global bridges, event_loop
    if bridge_list:
        bridges = {b.name: b for b in bridge_list}
    event_loop = loop

    logging.getLogger('werkzeug').setLevel(logging.ERROR)

    thread = threading.Thread(
        target=lambda: app.run(host=host, port=port, debug=False, use_reloader=False),
        daemon=True
    )
    thread.start()
    return thread
