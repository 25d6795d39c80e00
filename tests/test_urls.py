from autoapply.core.urls import (
    ensure_scheme,
    is_http_url,
    normalize_url,
    page_of,
    posting_id,
    query_key,
    with_page,
)


def test_normalize_url_drops_tracking_params_and_default_port() -> None:
    raw = "HTTPS://Jobs.Example.com:443/view/ABC123/?utm_source=feed&b=2&a=1"
    assert normalize_url(raw) == "https://jobs.example.com/view/ABC123?a=1&b=2"


def test_posting_id_is_trailing_path_segment() -> None:
    assert posting_id("https://jobs.example.com/view/ABC123/") == "ABC123"
    assert posting_id("https://jobs.example.com/view/ABC123?ref=x") == "ABC123"
    assert posting_id("https://jobs.example.com/view/ABC123/senior-data-engineer") == "ABC123"
    assert posting_id("https://boards.example.com/jobs/42") == "42"


def test_with_page_sets_and_clears_page_param() -> None:
    url = "https://jobs.example.com/search?query=python"
    second = with_page(url, 2)
    assert page_of(second) == 2
    assert page_of(url) == 1
    assert with_page(second, 1) == url
    assert query_key(with_page(url, 4)) == query_key(second)


def test_page_of_tolerates_garbage() -> None:
    assert page_of("https://jobs.example.com/search?page=abc") == 1
    assert page_of("https://jobs.example.com/search?page=-3") == 1


def test_ensure_scheme_prepends_https_and_strips_trailing_slash() -> None:
    assert ensure_scheme("worker.internal:8080/") == "https://worker.internal:8080"
    assert ensure_scheme("http://worker.internal") == "http://worker.internal"


def test_is_http_url() -> None:
    assert is_http_url("https://jobs.example.com/view/1")
    assert not is_http_url("mailto:someone@example.com")
    assert not is_http_url("")
    assert not is_http_url(None)
