"""
Entry context: what the tracker learns from the URL a visitor landed on.

Only the `ref` query parameter starts attribution; utm_* parameters and the
path are recorded as first-touch attributes alongside it.
"""

from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlsplit, parse_qs

from attribution.services.referrals.progress import UtmParams
from attribution.services.referrals.validation import is_valid_referral_code

REFERRAL_QUERY_PARAM = "ref"


@dataclass(frozen=True)
class EntryContext:
    referral_code: Optional[str]
    utm: UtmParams
    landing_page: Optional[str]
    referrer_url: Optional[str] = None

    @property
    def has_valid_code(self) -> bool:
        return is_valid_referral_code(self.referral_code)


def _first(params: dict, name: str) -> Optional[str]:
    values = params.get(name)
    if not values:
        return None
    value = values[0].strip()
    return value or None


def parse_entry_url(url: str, referrer_url: Optional[str] = None) -> EntryContext:
    """
    Extract ref / utm_* / path from an entry URL.

    The code is returned as found (not validated); use has_valid_code or
    is_valid_referral_code before acting on it.
    """
    parts = urlsplit(url or "")
    params = parse_qs(parts.query, keep_blank_values=False)
    return EntryContext(
        referral_code=_first(params, REFERRAL_QUERY_PARAM),
        utm=UtmParams(
            source=_first(params, "utm_source"),
            medium=_first(params, "utm_medium"),
            campaign=_first(params, "utm_campaign"),
        ),
        landing_page=parts.path or "/",
        referrer_url=referrer_url or None,
    )
