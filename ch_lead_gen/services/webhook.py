"""
Outbound webhooks: signed JSON notifications of rule results.

The body is serialized once and the HMAC is computed over exactly those
bytes, so receivers can verify X-Webhook-Signature against the raw body.
Delivery failures never raise; only a missing or malformed URL on an
enabled webhook does.
"""
import hashlib
import hmac
import json
import logging
import time
from datetime import datetime, timezone
from typing import Callable, Dict
from urllib.parse import urlparse

import requests

from ch_lead_gen.config import (
    WEBHOOK_TIMEOUT, WEBHOOK_MAX_ATTEMPTS, WEBHOOK_RETRY_BACKOFF, WEBHOOK_USER_AGENT,
)

logger = logging.getLogger('services.webhook')


class WebhookConfigError(ValueError):
    """Webhook is enabled but its URL is missing or not http(s)."""


def serialize(payload: Dict) -> bytes:
    """Compact JSON; '/' is left unescaped."""
    return json.dumps(payload, separators=(',', ':')).encode('utf-8')


def sign(body: bytes, secret: str) -> str:
    return 'sha256=' + hmac.new(secret.encode('utf-8'), body, hashlib.sha256).hexdigest()


def validate_url(url: str) -> str:
    url = (url or '').strip()
    parsed = urlparse(url)
    if parsed.scheme not in ('http', 'https') or not parsed.netloc:
        raise WebhookConfigError(f'Invalid webhook URL: {url!r}')
    return url


class WebhookClient:

    def __init__(self, timeout=WEBHOOK_TIMEOUT, max_attempts: int = WEBHOOK_MAX_ATTEMPTS,
                 retry_backoff: float = WEBHOOK_RETRY_BACKOFF,
                 sleep: Callable[[float], None] = time.sleep, clock: Callable[[], float] = time.time):
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts)
        self.retry_backoff = retry_backoff
        self._sleep = sleep
        self._clock = clock

    def build_headers(self, body: bytes, secret: str = '') -> Dict[str, str]:
        headers = {
            'Content-Type': 'application/json',
            'User-Agent': WEBHOOK_USER_AGENT,
            'X-Webhook-Timestamp': str(int(self._clock())),
        }
        if secret:
            headers['X-Webhook-Signature'] = sign(body, secret)
        return headers

    def _post(self, url: str, body: bytes, secret: str) -> requests.Response:
        return requests.post(url, data=body, headers=self.build_headers(body, secret), timeout=self.timeout)

    def send(self, url: str, secret: str, payload: Dict) -> bool:
        """
        POST payload to url. True iff a 2xx response arrives within
        max_attempts tries (exponential back-off between tries).
        """
        url = validate_url(url)
        body = serialize(payload)

        for attempt in range(1, self.max_attempts + 1):
            try:
                logger.info("Sending webhook to %s (attempt %d/%d, %d bytes)",
                            url, attempt, self.max_attempts, len(body))
                response = self._post(url, body, secret)
                if 200 <= response.status_code < 300:
                    logger.info("Webhook delivered to %s (status %d)", url, response.status_code)
                    return True
                logger.warning("Webhook to %s failed with status %d: %s",
                               url, response.status_code, response.text[:200])
            except requests.RequestException as e:
                logger.error("Error sending webhook to %s (attempt %d): %s", url, attempt, e)

            if attempt < self.max_attempts:
                delay = self.retry_backoff * (2 ** (attempt - 1))
                logger.info("Retrying webhook in %.0fs", delay)
                self._sleep(delay)

        return False

    def build_payload(self, rule_key: str, rule, results: Dict) -> Dict:
        sp = rule.search_parameters
        return {
            'event': 'rule_execution_completed',
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'rule': {
                'key': rule_key,
                'name': rule.name,
                'description': rule.description,
            },
            'results': {
                'companies_found': results.get('companies_found', 0),
                'contacts_found': results.get('contacts_found', 0),
                'contacts_added': results.get('contacts_added', 0),
                'execution_time': results.get('execution_time', 0),
                'instantly_lead_list': rule.lead_list_name if rule.instantly.enabled else '',
                'partial_execution': results.get('partial_execution', False),
            },
            'search_parameters': {
                'days_ago': sp.days_ago,
                'company_status': sp.company_status,
                'company_type': sp.company_type,
                'allowed_countries': sp.allowed_countries,
                'max_results': sp.max_results,
            },
            'contacts': results.get('contacts', []),
        }

    def send_rule_results(self, rule_key: str, rule, results: Dict) -> bool:
        """Notify the rule's webhook. Returns True without sending when disabled."""
        if not rule.webhook.enabled:
            logger.debug("Webhook disabled for rule %s", rule_key)
            return True
        if not rule.webhook.url:
            raise WebhookConfigError(f"Webhook enabled for rule '{rule_key}' but no URL is configured")
        return self.send(rule.webhook.url, rule.webhook.secret, self.build_payload(rule_key, rule, results))

    def test_webhook(self, url: str, secret: str = '') -> Dict:
        """Single unretried delivery of a 'webhook_test' event."""
        try:
            url = validate_url(url)
        except WebhookConfigError as e:
            return {'success': False, 'status_code': None, 'message': str(e)}

        body = serialize({
            'event': 'webhook_test',
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'message': 'This is a test webhook from CH Lead Generation',
        })
        try:
            response = self._post(url, body, secret)
        except requests.RequestException as e:
            logger.error("Webhook test to %s failed: %s", url, e)
            return {'success': False, 'status_code': None, 'message': f'Webhook test failed: {e}'}

        ok = 200 <= response.status_code < 300
        return {
            'success': ok,
            'status_code': response.status_code,
            'message': 'Webhook test successful' if ok else f'Webhook returned HTTP {response.status_code}',
        }
