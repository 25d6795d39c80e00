from __future__ import annotations

from typing import Protocol

from autoapply.core.text import tokenize
from autoapply.crawl.details import PostingDetail
from autoapply.services.repository import UserProfileRecord

DEFAULT_MATCH_SCORE = 70.0


class MatchScorer(Protocol):
    async def score(self, detail: PostingDetail, profile: UserProfileRecord | None) -> float: ...


class KeywordMatchScorer:
    """Scores 0-100 from title overlap with declared roles plus a location bonus."""

    async def score(self, detail: PostingDetail, profile: UserProfileRecord | None) -> float:
        if profile is None:
            return DEFAULT_MATCH_SCORE
        company = (detail.company or "").casefold()
        if company and any(company == excluded.casefold() for excluded in profile.excluded_companies if excluded):
            return 0.0

        roles = [*profile.job_titles_of_interest, *([profile.job_title] if profile.job_title else [])]
        role_tokens = [tokens for tokens in (tokenize(role) for role in roles) if tokens]
        if not role_tokens:
            return DEFAULT_MATCH_SCORE

        title_tokens = tokenize(detail.title)
        coverage = max(len(title_tokens & tokens) / len(tokens) for tokens in role_tokens)
        score = 40.0 + 50.0 * coverage

        wanted_locations = set().union(*(tokenize(location) for location in profile.locations_of_interest))
        if detail.remote and any(mode.lower() == "remote" for mode in profile.workplace_of_interest):
            score += 10.0
        elif wanted_locations and wanted_locations & tokenize(detail.location):
            score += 10.0
        return round(min(score, 100.0), 1)
