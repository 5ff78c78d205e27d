"""
Instantly outreach client: get-or-create a lead list, then upload leads.
"""
import logging
from typing import Dict, List, Optional

import requests

from ch_lead_gen.config import INSTANTLY_API_KEY, INSTANTLY_API_URL, INSTANTLY_TIMEOUT

logger = logging.getLogger('services.instantly')

API_NAME = 'instantly'


class InstantlyError(Exception):
    """Lead list lookup/creation failed."""


def split_name(name: Optional[str]):
    """'Jane van Dyke' → ('Jane', 'van Dyke'); empty → (None, None)."""
    parts = (name or '').strip().split(None, 1)
    if not parts:
        return None, None
    return parts[0], parts[1] if len(parts) > 1 else ''


class InstantlyClient:

    def __init__(self, api_key=None, rate_limiter=None, base_url=INSTANTLY_API_URL, timeout=INSTANTLY_TIMEOUT):
        self.api_key = api_key if api_key is not None else INSTANTLY_API_KEY
        self.rate_limiter = rate_limiter
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout

    def _headers(self):
        return {
            'Authorization': f'Bearer {self.api_key or ""}',
            'Content-Type': 'application/json',
            'Accept': 'application/json',
        }

    def _before_request(self, endpoint):
        if self.rate_limiter:
            self.rate_limiter.throttle(API_NAME)
            self.rate_limiter.record_usage(API_NAME, endpoint)

    def get_or_create_list(self, name: str) -> str:
        """
        Return the id of the lead list called `name` (case-insensitive),
        creating it only when no such list exists. Raises on failure.
        """
        self._before_request('list_lookup')
        response = requests.get(f'{self.base_url}/lead-lists', headers=self._headers(), timeout=self.timeout)
        response.raise_for_status()
        data = response.json() or {}

        for lead_list in data.get('items') or data.get('lead_lists') or []:
            if str(lead_list.get('name', '')).casefold() == name.casefold():
                logger.info("Using existing lead list '%s' (%s)", name, lead_list.get('id'))
                return lead_list['id']

        self._before_request('create_list')
        response = requests.post(
            f'{self.base_url}/lead-lists',
            json={'name': name},
            headers=self._headers(),
            timeout=self.timeout,
        )
        response.raise_for_status()
        created = response.json() or {}
        if not created.get('id'):
            raise InstantlyError(f"Failed to create lead list '{name}': {created}")

        logger.info("Created lead list '%s' (%s)", name, created['id'])
        return created['id']

    def upload_contacts(self, list_id: str, contacts: List[Dict]) -> int:
        """POST each contact; failures are logged and skipped. Returns the count confirmed."""
        added = 0
        for contact in contacts:
            first_name, last_name = split_name(contact.get('name'))
            payload = {
                'list_id': list_id,
                'email': contact.get('email'),
                'first_name': first_name,
                'last_name': last_name,
                'company_name': contact.get('company_name_input'),
            }
            try:
                self._before_request('add_contacts')
                response = requests.post(
                    f'{self.base_url}/leads',
                    json=payload,
                    headers=self._headers(),
                    timeout=self.timeout,
                )
                response.raise_for_status()
                data = response.json() or {}
            except Exception as e:
                logger.error("Error adding lead %s: %s", contact.get('email'), e)
                continue

            if data.get('id'):
                added += 1
                logger.debug("Added lead %s", contact.get('email'))
            else:
                logger.warning("Lead %s not confirmed by Instantly: %s", contact.get('email'), data)

        logger.info("Added %d of %d contacts to Instantly list %s", added, len(contacts), list_id)
        return added

    def add_contacts(self, list_name: str, contacts: List[Dict]) -> int:
        """Get-or-create the named list and upload contacts into it."""
        if not contacts:
            logger.info("No contacts to add to Instantly")
            return 0
        list_id = self.get_or_create_list(list_name)
        return self.upload_contacts(list_id, contacts)
