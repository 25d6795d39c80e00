from __future__ import annotations

from dataclasses import dataclass, replace
from urllib.parse import urlencode

from autoapply.services.repository import UserProfileRecord

DEFAULT_BOARD_SEARCH_URL = "https://jobs.workable.com/search"
DEFAULT_DAY_RANGE = 30
SEED_TITLE_COUNT = 3
FALLBACK_TITLES = (
    "Software Engineer",
    "Web Developer",
    "Full Stack Developer",
    "Frontend Developer",
    "Backend Developer",
    "Software Developer",
    "React Developer",
    "JavaScript Developer",
    "Node.js Developer",
)
EXPERIENCE_LEVELS = ("entry_level", "associate", "mid_senior_level", "director", "executive")

_WORK_MODE_ALIASES = {
    "remote": "remote",
    "fully remote": "remote",
    "work from home": "remote",
    "wfh": "remote",
    "hybrid": "hybrid",
    "any": "any",
    "all": "any",
    "flexible": "any",
    "on-site": "any",
    "onsite": "any",
    "on site": "any",
    "in-person": "any",
    "office": "any",
}
_LOCATION_PLACEHOLDERS = {"remote", "anywhere", "worldwide"}


@dataclass(slots=True)
class SearchParams:
    role: str | None = None
    location: str | None = None
    work_mode: str | None = None
    day_range: int | None = DEFAULT_DAY_RANGE
    experience: str | None = None
    page: int = 1


def normalize_work_mode(value: str | None) -> str | None:
    if not value:
        return None
    return _WORK_MODE_ALIASES.get(value.strip().lower())


def resolve_role(profile: UserProfileRecord | None, params: SearchParams) -> str:
    if params.role and params.role.strip():
        return params.role.strip()
    if profile is not None:
        for title in profile.job_titles_of_interest:
            if title and title.strip():
                return title.strip()
        if profile.job_title and profile.job_title.strip():
            return profile.job_title.strip()
    return FALLBACK_TITLES[0]


def resolve_location(profile: UserProfileRecord | None, params: SearchParams) -> str | None:
    if params.location and params.location.strip():
        return params.location.strip()
    if profile is not None:
        for location in profile.locations_of_interest:
            if location and location.strip():
                return location.strip()
        if profile.location and profile.location.strip():
            return profile.location.strip()
    return None


def resolve_work_mode(profile: UserProfileRecord | None, params: SearchParams) -> str:
    explicit = normalize_work_mode(params.work_mode)
    if explicit:
        return explicit
    if profile is not None:
        for mode in profile.workplace_of_interest:
            normalized = normalize_work_mode(mode)
            if normalized:
                return normalized
        legacy = normalize_work_mode(profile.preferred_work_arrangement)
        if legacy:
            return legacy
    return "any"


def build_search_url(
    profile: UserProfileRecord | None,
    params: SearchParams | None = None,
    *,
    base_url: str = DEFAULT_BOARD_SEARCH_URL,
) -> str:
    """Build one board search URL.

    Each attribute resolves as: explicit parameter, then the profile's structured
    list, then its legacy single-value field, then a default.
    """
    params = params or SearchParams()
    role = resolve_role(profile, params)
    location = resolve_location(profile, params)
    work_mode = resolve_work_mode(profile, params)

    query = role
    if location and location.lower() not in _LOCATION_PLACEHOLDERS:
        query = f"{role} {location}"

    pairs: list[tuple[str, str]] = [("query", query)]
    if work_mode != "any":
        pairs.append(("workplace", work_mode))
    if params.day_range is not None:
        pairs.append(("day_range", str(params.day_range)))
    if params.experience:
        pairs.append(("experience", params.experience))
    if params.page > 1:
        pairs.append(("page", str(params.page)))
    return f"{base_url.rstrip('/')}?{urlencode(pairs)}"


def seed_titles(profile: UserProfileRecord | None, count: int = SEED_TITLE_COUNT) -> list[str]:
    """The user's first declared titles as given, padded with fallbacks unrelated to any of them."""
    declared: list[str] = []
    if profile is not None:
        for title in [*profile.job_titles_of_interest, profile.job_title]:
            cleaned = title.strip() if title else ""
            if cleaned and cleaned not in declared:
                declared.append(cleaned)

    titles = declared[:count]
    for fallback in FALLBACK_TITLES:
        if len(titles) >= count:
            break
        if not any(_near_duplicate(fallback, title) for title in declared):
            titles.append(fallback)
    return titles


def generate_search_urls(
    profile: UserProfileRecord | None,
    max_pages: int = 1,
    *,
    params: SearchParams | None = None,
    base_url: str = DEFAULT_BOARD_SEARCH_URL,
) -> list[str]:
    base_params = params or SearchParams()
    titles = [base_params.role] if base_params.role else seed_titles(profile)
    levels = [level for level in (profile.job_experience_level if profile else []) if level in EXPERIENCE_LEVELS]

    urls: list[str] = []
    for title in titles:
        for page in range(1, max(1, max_pages) + 1):
            urls.append(build_search_url(profile, replace(base_params, role=title, page=page), base_url=base_url))
    for level in levels:
        for title in titles:
            urls.append(
                build_search_url(
                    profile,
                    replace(base_params, role=title, experience=level, page=1),
                    base_url=base_url,
                )
            )
    return list(dict.fromkeys(urls))


def default_search_urls(*, base_url: str = DEFAULT_BOARD_SEARCH_URL) -> list[str]:
    return [
        build_search_url(None, SearchParams(role=title, work_mode="remote"), base_url=base_url)
        for title in FALLBACK_TITLES[:SEED_TITLE_COUNT]
    ]


def _near_duplicate(left: str, right: str) -> bool:
    a = left.casefold()
    b = right.casefold()
    return a in b or b in a
