from typing import TypedDict, Optional, List, Iterable
import re

from .errors import JobValidationError

MIN_COMPANY_NAME_LEN = 2
MAX_COMPANY_NAME_LEN = 200
MAX_GEOGRAPHY_LEN = 200
MAX_INDUSTRY_LEN = 200
MAX_FOCUS_AREAS = 10
MAX_FOCUS_AREA_LEN = 200
DEFAULT_GEOGRAPHY = "Global"

_WHITESPACE_RE = re.compile(r"\s+")
_SURROUNDING_QUOTES_RE = re.compile(r'^"+|"+$')
_MEANINGFUL_RE = re.compile(r"[A-Za-z0-9]")


class NormalizedJobRequest(TypedDict):
    company_name: str
    normalized_company: str
    geography: str
    normalized_geography: str
    industry: Optional[str]
    focus_areas: Optional[List[str]]


def normalize_input(value: Optional[str]) -> str:
    """
    Trim, collapse internal whitespace and strip surrounding double quotes.
    """
    if not value:
        return ""
    collapsed = _WHITESPACE_RE.sub(" ", value.strip())
    return _SURROUNDING_QUOTES_RE.sub("", collapsed)


def to_title_like(value: str) -> str:
    """
    Upper-case the first letter of each word, leaving the rest untouched
    (so "ACME corp" becomes "ACME Corp", not "Acme Corp").
    """
    if not value:
        return value
    return " ".join(part[:1].upper() + part[1:] for part in value.split(" "))


def has_meaningful_chars(value: str) -> bool:
    return bool(_MEANINGFUL_RE.search(value or ""))


def normalization_key(value: str) -> str:
    """Lower-cased, whitespace-collapsed key used for matching jobs."""
    return _WHITESPACE_RE.sub(" ", value.strip().lower())


def _normalize_focus_areas(focus_areas: Optional[Iterable[str]]) -> Optional[List[str]]:
    if not focus_areas:
        return None
    cleaned: List[str] = []
    for area in focus_areas:
        area = normalize_input(area)
        if area and has_meaningful_chars(area) and area not in cleaned:
            cleaned.append(area[:MAX_FOCUS_AREA_LEN])
    return cleaned[:MAX_FOCUS_AREAS] or None


def normalize_job_request(
    company_name: Optional[str],
    geography: Optional[str] = None,
    industry: Optional[str] = None,
    focus_areas: Optional[Iterable[str]] = None,
) -> NormalizedJobRequest:
    """
    Normalise user-provided text inputs, rejecting empty or garbage company names.

    Geography falls back to "Global" and industry to None when they carry no
    meaningful characters.
    """
    company = normalize_input(company_name)
    if (
        not company
        or len(company) < MIN_COMPANY_NAME_LEN
        or not has_meaningful_chars(company)
    ):
        raise JobValidationError("Missing or invalid company_name. Please provide a valid company name.")
    if len(company) > MAX_COMPANY_NAME_LEN:
        raise JobValidationError(f"company_name must be at most {MAX_COMPANY_NAME_LEN} characters")

    geo = normalize_input(geography or DEFAULT_GEOGRAPHY)
    if len(geo) > MAX_GEOGRAPHY_LEN:
        raise JobValidationError(f"geography must be at most {MAX_GEOGRAPHY_LEN} characters")
    geo = to_title_like(geo) if has_meaningful_chars(geo) else DEFAULT_GEOGRAPHY

    ind = normalize_input(industry or "")
    if len(ind) > MAX_INDUSTRY_LEN:
        raise JobValidationError(f"industry must be at most {MAX_INDUSTRY_LEN} characters")
    ind_value = to_title_like(ind) if ind and has_meaningful_chars(ind) else None

    company = to_title_like(company)
    return NormalizedJobRequest(
        company_name=company,
        normalized_company=normalization_key(company),
        geography=geo,
        normalized_geography=normalization_key(geo),
        industry=ind_value,
        focus_areas=_normalize_focus_areas(focus_areas),
    )
