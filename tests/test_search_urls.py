from urllib.parse import parse_qs, urlparse

from autoapply.crawl.search_urls import (
    FALLBACK_TITLES,
    SearchParams,
    build_search_url,
    default_search_urls,
    generate_search_urls,
    seed_titles,
)
from autoapply.services.repository import UserProfileRecord


def _query(url: str) -> dict[str, list[str]]:
    return parse_qs(urlparse(url).query)


def test_explicit_params_take_precedence_over_profile() -> None:
    profile = UserProfileRecord(
        user_id=1,
        job_titles_of_interest=["Data Engineer"],
        locations_of_interest=["Berlin"],
        workplace_of_interest=["Hybrid"],
    )
    url = build_search_url(profile, SearchParams(role="Rust Developer", location="Lisbon", work_mode="remote"))
    query = _query(url)
    assert query["query"] == ["Rust Developer Lisbon"]
    assert query["workplace"] == ["remote"]
    assert query["day_range"] == ["30"]


def test_structured_lists_beat_legacy_fields() -> None:
    profile = UserProfileRecord(
        user_id=1,
        job_titles_of_interest=["Data Engineer"],
        job_title="Analyst",
        locations_of_interest=["Berlin"],
        location="Paris",
        workplace_of_interest=["Remote"],
        preferred_work_arrangement="hybrid",
    )
    query = _query(build_search_url(profile))
    assert query["query"] == ["Data Engineer Berlin"]
    assert query["workplace"] == ["remote"]


def test_legacy_fields_used_when_lists_empty() -> None:
    profile = UserProfileRecord(user_id=1, job_title="Analyst", location="Paris", preferred_work_arrangement="Hybrid")
    query = _query(build_search_url(profile))
    assert query["query"] == ["Analyst Paris"]
    assert query["workplace"] == ["hybrid"]


def test_defaults_without_profile() -> None:
    query = _query(build_search_url(None))
    assert query["query"] == [FALLBACK_TITLES[0]]
    assert "workplace" not in query


def test_remote_location_is_not_added_to_query_and_onsite_maps_to_any() -> None:
    profile = UserProfileRecord(user_id=1, job_title="Analyst", location="Remote", preferred_work_arrangement="On-site")
    query = _query(build_search_url(profile))
    assert query["query"] == ["Analyst"]
    assert "workplace" not in query


def test_page_param_only_added_past_first_page() -> None:
    assert "page" not in _query(build_search_url(None, SearchParams(page=1)))
    assert _query(build_search_url(None, SearchParams(page=3)))["page"] == ["3"]


def test_seed_titles_keep_declared_titles_as_given() -> None:
    profile = UserProfileRecord(
        user_id=1,
        job_titles_of_interest=["Data Engineer", "Senior Data Engineer", "ML Engineer", "Analyst"],
    )
    assert seed_titles(profile) == ["Data Engineer", "Senior Data Engineer", "ML Engineer"]


def test_seed_titles_pad_with_fallbacks_unrelated_to_declared_titles() -> None:
    profile = UserProfileRecord(user_id=1, job_titles_of_interest=["Senior Software Engineer"])
    assert seed_titles(profile) == ["Senior Software Engineer", "Web Developer", "Full Stack Developer"]
    assert seed_titles(None) == ["Software Engineer", "Web Developer", "Full Stack Developer"]


def test_generate_search_urls_fans_out_pages_and_experience_levels() -> None:
    profile = UserProfileRecord(
        user_id=1,
        job_titles_of_interest=["Data Engineer", "ML Engineer", "Platform Engineer"],
        job_experience_level=["mid_senior_level", "not_a_level"],
    )
    urls = generate_search_urls(profile, max_pages=2)

    assert len(urls) == 3 * 2 + 3
    assert len(set(urls)) == len(urls)
    experience_urls = [url for url in urls if "experience" in _query(url)]
    assert len(experience_urls) == 3
    assert all(_query(url)["experience"] == ["mid_senior_level"] for url in experience_urls)
    assert all("page" not in _query(url) for url in experience_urls)


def test_default_search_urls_are_remote_fallbacks() -> None:
    urls = default_search_urls()
    assert len(urls) == 3
    assert all(_query(url)["workplace"] == ["remote"] for url in urls)
