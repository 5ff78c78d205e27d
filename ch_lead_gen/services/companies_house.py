"""
Companies House registry client.

Two deliberately different failure contracts:
  - search_companies() is soft: any error is logged and None is returned,
    which callers treat as "no companies found".
  - check_confirmation_statement() is hard: transport errors propagate and
    the caller decides whether to skip the company.
"""
import logging
import math
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional

import requests

from ch_lead_gen.config import (
    COMPANIES_HOUSE_API_KEY, COMPANIES_HOUSE_API_URL, COMPANIES_HOUSE_TIMEOUT,
    CONFIRMATION_STATEMENT_MAX_PAGES,
)

logger = logging.getLogger('services.companies_house')

API_NAME = 'companies_house'
PAGE_SIZE = 100
GRACE_PERIOD_DAYS = 14

UK_VARIANTS = {
    'united kingdom', 'england', 'scotland', 'wales',
    'northern ireland', 'great britain', 'uk', 'gb',
}
US_VARIANTS = {
    'united states', 'united states of america', 'usa', 'us',
}


def normalize_country(country) -> str:
    """Map free-text registry country names onto GB / US, else upper-case."""
    cleaned = str(country or '').strip()
    lowered = ' '.join(cleaned.lower().split())
    if lowered in UK_VARIANTS:
        return 'GB'
    if lowered in US_VARIANTS:
        return 'US'
    return cleaned.upper()


def company_country(company: Dict) -> str:
    """Raw country string from a search item, or 'Unknown'."""
    for address_key in ('registered_office_address', 'address'):
        country = (company.get(address_key) or {}).get('country')
        if country:
            return country
    return 'Unknown'


def company_display_name(company: Dict) -> str:
    return company.get('company_name') or company.get('title') or 'Unknown'


def _parse_date(value) -> Optional[date]:
    if not value:
        return None
    try:
        return datetime.strptime(str(value)[:10], '%Y-%m-%d').date()
    except ValueError:
        return None


def _anniversary(incorporated: date, year: int) -> date:
    try:
        return incorporated.replace(year=year)
    except ValueError:
        # 29 February incorporation in a non-leap year
        return incorporated.replace(year=year, day=28)


class CompaniesHouseClient:
    """HTTP client for the Companies House public data API."""

    def __init__(self, api_key=None, rate_limiter=None, base_url=COMPANIES_HOUSE_API_URL,
                 timeout=COMPANIES_HOUSE_TIMEOUT):
        self.api_key = api_key if api_key is not None else COMPANIES_HOUSE_API_KEY
        self.rate_limiter = rate_limiter
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout

    def _get(self, path: str, params: Dict = None) -> Dict:
        response = requests.get(
            f'{self.base_url}{path}',
            params=params,
            auth=(self.api_key or '', ''),
            headers={'Accept': 'application/json'},
            timeout=self.timeout,
        )
        response.raise_for_status()
        return response.json()

    def _record(self, endpoint: str):
        if self.rate_limiter:
            self.rate_limiter.record_usage(API_NAME, endpoint)

    # ── Search ────────────────────────────────────────────────────────

    def search_companies(self, filters: Dict = None, max_results: int = 200) -> Optional[Dict]:
        """
        Page through company search results.

        Uses advanced search when an incorporation date window is given,
        basic search otherwise. Returns None on any error.
        """
        filters = dict(filters or {})
        try:
            if 'incorporated_from' in filters or 'incorporated_to' in filters:
                endpoint = '/advanced-search/companies'
                base_query = {'size': PAGE_SIZE}
            else:
                endpoint = '/search/companies'
                base_query = {'q': '*', 'items_per_page': PAGE_SIZE}

            companies: List[Dict] = []
            max_pages = math.ceil(max_results / PAGE_SIZE) if max_results > 0 else 0
            page = 0

            logger.info("Searching Companies House %s for up to %d results", endpoint, max_results)

            while len(companies) < max_results and page < max_pages:
                query = {**base_query, **filters, 'start_index': page * PAGE_SIZE}

                if page > 0 and self.rate_limiter:
                    self.rate_limiter.throttle(API_NAME)
                elif self.rate_limiter:
                    self.rate_limiter.mark(API_NAME)

                data = self._get(endpoint, query)
                self._record('search')

                items = data.get('items') or []
                if not items:
                    logger.info("No more companies on page %d", page + 1)
                    break

                companies.extend(items)
                logger.debug("Page %d: %d companies (total %d)", page + 1, len(items), len(companies))

                total = data.get('total_results') or data.get('total_count') or 0
                if len(companies) >= total or len(items) < PAGE_SIZE:
                    logger.info("Retrieved all available results: %d/%d", len(companies), total)
                    break

                page += 1

            items = companies[:max_results]
            logger.info("Companies House search returned %d companies", len(items))
            return {
                'total_results': len(companies),
                'items': items,
                'page_number': 1,
                'items_per_page': len(companies),
                'start_index': 0,
                'kind': 'search#companies',
            }
        except Exception as e:
            logger.error("Companies House search failed: %s", e)
            return None

    # ── Confirmation statements ───────────────────────────────────────

    def get_filing_history(self, company_number: str, max_pages: int = CONFIRMATION_STATEMENT_MAX_PAGES) -> List[Dict]:
        """All confirmation-statement filings, up to max_pages pages. Raises on error."""
        filings: List[Dict] = []
        for page in range(max_pages):
            if self.rate_limiter:
                self.rate_limiter.throttle(API_NAME)
            data = self._get(f'/company/{company_number}/filing-history', {
                'items_per_page': PAGE_SIZE,
                'start_index': page * PAGE_SIZE,
                'category': 'confirmation-statement',
            })
            self._record('filing_history')

            items = data.get('items') or []
            filings.extend(items)
            total = data.get('total_count') or 0
            if not items or len(items) < PAGE_SIZE or len(filings) >= total:
                break
        return filings

    def check_confirmation_statement(self, company: Dict, max_pages: int = CONFIRMATION_STATEMENT_MAX_PAGES,
                                     today: date = None) -> Dict:
        """
        Decide whether a company's confirmation statement is missing.

        Missing when there are no filings, when the latest filing date is
        unusable, or when this year's incorporation anniversary plus the
        14-day grace period has passed with no filing made since the
        anniversary. Transport errors propagate.
        """
        today = today or date.today()
        company_number = company.get('company_number')
        filings = self.get_filing_history(company_number, max_pages=max_pages)
        return analyze_confirmation_statements(company, filings, today)


def analyze_confirmation_statements(company: Dict, filings: List[Dict], today: date) -> Dict:
    """Pure verdict over a company's confirmation-statement filings."""
    verdict = {'company': company, 'total_filings': len(filings)}

    if not filings:
        return {**verdict, 'missing': True, 'reason': 'No confirmation statements found'}

    ordered = sorted(filings, key=lambda f: _parse_date(f.get('date')) or date.min, reverse=True)
    latest = _parse_date(ordered[0].get('date'))
    if latest is None:
        return {**verdict, 'missing': True, 'reason': 'No valid filing dates found'}

    verdict['latest_filing_date'] = latest.isoformat()

    incorporated = _parse_date(company.get('date_of_creation'))
    if incorporated is not None:
        anniversary = _anniversary(incorporated, today.year)
        if anniversary > today:
            anniversary = _anniversary(incorporated, today.year - 1)
        expected_by = anniversary + timedelta(days=GRACE_PERIOD_DAYS)
        if anniversary > incorporated and today > expected_by and latest < anniversary:
            return {
                **verdict,
                'missing': True,
                'reason': 'Confirmation statement overdue',
                'expected_by': expected_by.isoformat(),
                'days_overdue': (today - expected_by).days,
            }

    return {**verdict, 'missing': False, 'reason': 'Confirmation statement up to date'}
