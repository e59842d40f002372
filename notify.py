"""
Callback notification sender for push-triggered redeploys.

Failures are always logged as warnings and never re-raised so that a broken
callback URL cannot affect the redeploy that triggered it.
"""

import logging
from typing import Any, Dict

import requests

logger = logging.getLogger(__name__)

_REQUEST_TIMEOUT = 10  # seconds

STATE_SUCCESS = 'success'
STATE_ERROR = 'error'


def _build_payload(state: str) -> Dict[str, Any]:
    return {'state': state}


def send_callback(url: str, state: str) -> bool:
    """POST ``{"state": state}`` as JSON to a push notification's callback URL.

    Returns True when the callback was accepted.
    """
    url = (url or '').strip()
    if not url:
        logger.warning("callback: no URL supplied, skipping")
        return False

    try:
        response = requests.post(url, json=_build_payload(state), timeout=_REQUEST_TIMEOUT)
        response.raise_for_status()
        logger.info("callback: reported state '%s'", state)
        return True
    except requests.RequestException as e:
        logger.warning("callback: failed to report state '%s': %s", state, e)
        return False
