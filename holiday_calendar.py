"""
Non-working day calendar: Sundays, public holidays and institute holidays.

Public holidays come from the Nager.Date API and fall back to a built-in
table when the API is unreachable.
"""

import calendar
import logging
import os
import time
from datetime import date, timedelta

import requests

from attendance_stats import date_key, parse_date

DEFAULT_COUNTRY = (os.environ.get('HOLIDAY_COUNTRY') or 'IN').strip().upper()
HOLIDAY_API_URL = 'https://date.nager.at/api/v3/PublicHolidays/{year}/{country}'
HOLIDAY_CACHE_TTL_SECONDS = 6 * 60 * 60
HOLIDAY_CACHE_MAX_ENTRIES = 50
USER_AGENT = 'Student-Data-Management/1.0'

# (year, country) -> {'holidays': [...], 'expires_at': epoch seconds}
_HOLIDAY_CACHE = {}


def _holiday(day, local_name, name):
    return {
        'date': day,
        'local_name': local_name,
        'name': name,
        'country_code': 'IN',
        'types': ['Public'],
    }


FALLBACK_HOLIDAYS = {
    'IN': {
        2024: [
            _holiday('2024-01-26', 'Republic Day', 'Republic Day of India'),
            _holiday('2024-03-08', 'Mahashivratri', 'Maha Shivaratri'),
            _holiday('2024-03-25', 'Holi', 'Holi'),
            _holiday('2024-03-29', 'Good Friday', 'Good Friday'),
            _holiday('2024-04-11', 'Eid al-Fitr', 'Id-ul-Fitr'),
            _holiday('2024-05-23', 'Buddha Purnima', 'Buddha Purnima'),
            _holiday('2024-08-15', 'Independence Day', 'Independence Day of India'),
            _holiday('2024-08-19', 'Raksha Bandhan', 'Raksha Bandhan'),
            _holiday('2024-10-02', 'Gandhi Jayanti', 'Mahatma Gandhi Jayanti'),
            _holiday('2024-10-12', 'Dussehra', 'Vijaya Dashami'),
            _holiday('2024-10-31', 'Diwali', 'Deepavali/Diwali'),
            _holiday('2024-11-01', 'Govardhan Puja', 'Govardhan Puja'),
            _holiday('2024-11-03', 'Bhai Dooj', 'Bhai Duj'),
            _holiday('2024-12-25', 'Christmas Day', 'Christmas Day'),
        ],
        2025: [
            _holiday('2025-01-26', 'Republic Day', 'Republic Day of India'),
            _holiday('2025-03-01', 'Mahashivratri', 'Maha Shivaratri'),
            _holiday('2025-03-14', 'Holi', 'Holi'),
            _holiday('2025-03-31', 'Eid al-Fitr', 'Id-ul-Fitr'),
            _holiday('2025-04-18', 'Good Friday', 'Good Friday'),
            _holiday('2025-05-12', 'Buddha Purnima', 'Buddha Purnima'),
            _holiday('2025-06-06', 'Bakrid', 'Id-ul-Zuha (Bakrid)'),
            _holiday('2025-08-15', 'Independence Day', 'Independence Day of India'),
            _holiday('2025-08-19', 'Janmashtami', 'Janmashtami'),
            _holiday('2025-10-02', 'Gandhi Jayanti', 'Mahatma Gandhi Jayanti'),
            _holiday('2025-10-21', 'Diwali', 'Deepavali/Diwali'),
            _holiday('2025-10-22', 'Govardhan Puja', 'Govardhan Puja'),
            _holiday('2025-10-23', 'Bhai Dooj', 'Bhai Duj'),
            _holiday('2025-11-01', 'Guru Nanak Jayanti', 'Guru Nanak Jayanti'),
            _holiday('2025-12-25', 'Christmas Day', 'Christmas Day'),
        ],
    },
}


def get_fallback_holidays(country, year):
    if not country or not year:
        return []
    by_year = FALLBACK_HOLIDAYS.get(country.upper()) or {}
    return [dict(h) for h in by_year.get(int(year), [])]


def month_bounds(year, month):
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, 1), date(year, month, last_day)


def sundays_for_month(year, month):
    start, end = month_bounds(year, month)
    offset = (6 - start.weekday()) % 7
    cursor = start + timedelta(days=offset)
    sundays = []
    while cursor <= end:
        sundays.append(cursor.isoformat())
        cursor += timedelta(days=7)
    return sundays


def parse_month_param(month, year=None):
    """Accept 'YYYY-MM' or a numeric month with a separate year.

    Returns (year, month) or (None, None).
    """
    text = str(month or '').strip()
    try:
        if '-' in text:
            year_part, month_part = text.split('-', 1)
            parsed_year, parsed_month = int(year_part), int(month_part)
        elif text:
            parsed_year, parsed_month = int(year), int(text)
        else:
            today = date.today()
            parsed_year = int(year) if year else today.year
            parsed_month = today.month
    except (TypeError, ValueError):
        return None, None
    if not 1 <= parsed_month <= 12 or not 2000 <= parsed_year <= 2100:
        return None, None
    return parsed_year, parsed_month


def _cleanup_holiday_cache():
    now = time.time()
    stale = [k for k, item in _HOLIDAY_CACHE.items() if item['expires_at'] <= now]
    for k in stale:
        _HOLIDAY_CACHE.pop(k, None)
    if len(_HOLIDAY_CACHE) > HOLIDAY_CACHE_MAX_ENTRIES:
        ordered = sorted(_HOLIDAY_CACHE.items(), key=lambda kv: kv[1]['expires_at'])
        for k, _item in ordered[:len(_HOLIDAY_CACHE) - HOLIDAY_CACHE_MAX_ENTRIES]:
            _HOLIDAY_CACHE.pop(k, None)


def clear_holiday_cache():
    _HOLIDAY_CACHE.clear()


def _normalize_remote_holiday(item):
    return {
        'date': date_key(item.get('date')),
        'local_name': item.get('localName') or item.get('name'),
        'name': item.get('name') or item.get('localName'),
        'country_code': item.get('countryCode'),
        'types': item.get('types') or [],
    }


def fetch_public_holidays(year, country=None, use_remote=True, timeout=8):
    """Return (holidays, from_cache) for one year."""
    country = (country or DEFAULT_COUNTRY).upper()
    cache_key = (int(year), country)
    _cleanup_holiday_cache()
    cached = _HOLIDAY_CACHE.get(cache_key)
    if cached:
        return [dict(h) for h in cached['holidays']], True

    holidays = None
    if use_remote:
        url = HOLIDAY_API_URL.format(year=int(year), country=country)
        try:
            response = requests.get(
                url,
                timeout=timeout,
                headers={'User-Agent': USER_AGENT, 'Accept': 'application/json'},
            )
            response.raise_for_status()
            payload = response.json() if response.content.strip() else []
            if not isinstance(payload, list):
                raise ValueError(f'unexpected holiday payload type {type(payload).__name__}')
            holidays = [_normalize_remote_holiday(item) for item in payload if isinstance(item, dict) and item.get('date')]
        except (requests.exceptions.RequestException, ValueError) as exc:
            logging.warning("Holiday API unavailable for %s/%s, using fallback: %s", year, country, exc)
            holidays = None

    if holidays is None:
        holidays = get_fallback_holidays(country, year)

    _HOLIDAY_CACHE[cache_key] = {
        'holidays': holidays,
        'expires_at': time.time() + HOLIDAY_CACHE_TTL_SECONDS,
    }
    _cleanup_holiday_cache()
    return [dict(h) for h in holidays], False


def public_holidays_for_range(start, end, country=None, use_remote=True):
    start_date = parse_date(start)
    end_date = parse_date(end)
    found = []
    for year in range(start_date.year, end_date.year + 1):
        holidays, _from_cache = fetch_public_holidays(year, country, use_remote=use_remote)
        for holiday in holidays:
            day = parse_date(holiday.get('date'))
            if day and start_date <= day <= end_date:
                found.append(holiday)
    return found


def build_non_working_days(start, end, custom_holidays=(), country=None, use_remote=True):
    """Map each non-working date in [start, end] to its details.

    custom_holidays is an iterable of rows with 'date' and 'title'.
    """
    start_date = parse_date(start)
    end_date = parse_date(end)
    if not start_date or not end_date or start_date > end_date:
        raise ValueError('Invalid date range supplied')

    details = {}

    def entry(key):
        if key not in details:
            details[key] = {
                'date': key,
                'is_sunday': False,
                'public_holiday': None,
                'custom_holiday': None,
            }
        return details[key]

    offset = (6 - start_date.weekday()) % 7
    cursor = start_date + timedelta(days=offset)
    while cursor <= end_date:
        entry(cursor.isoformat())['is_sunday'] = True
        cursor += timedelta(days=7)

    for holiday in public_holidays_for_range(start_date, end_date, country, use_remote=use_remote):
        entry(holiday['date'])['public_holiday'] = holiday

    for holiday in custom_holidays or ():
        day = parse_date(holiday.get('date') or holiday.get('holiday_date'))
        if day and start_date <= day <= end_date:
            entry(day.isoformat())['custom_holiday'] = {
                'date': day.isoformat(),
                'title': holiday.get('title') or 'Holiday',
                'description': holiday.get('description'),
            }

    for info in details.values():
        reasons = []
        if info['is_sunday']:
            reasons.append('Sunday')
        if info['public_holiday']:
            reasons.append(info['public_holiday'].get('local_name') or info['public_holiday'].get('name') or 'Public holiday')
        if info['custom_holiday']:
            reasons.append(info['custom_holiday'].get('title') or 'Institute holiday')
        info['reasons'] = reasons
    return dict(sorted(details.items()))
