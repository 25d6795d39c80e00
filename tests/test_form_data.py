from __future__ import annotations

import asyncio
import json

import httpx
import pytest
from conftest import add_job, add_user

from autoapply.core.errors import FormValidationError
from autoapply.crawl.rate_governor import RateGovernor
from autoapply.jobs.form_data import ApplicantValues, build_form_data, match_attribute
from autoapply.jobs.submission import ApplicationSubmitter
from autoapply.schemas.automation import FormField
from autoapply.services.automation_client import AutomationClient
from autoapply.services.repository import JobRecord, UserProfileRecord, UserRecord

JOB = JobRecord(id=7, user_id=1, title="Data Engineer", company="Acme", link="https://jobs.example.com/view/A")


def _applicant() -> ApplicantValues:
    user = UserRecord(id=1, email="ada@example.com", full_name="Ada King Lovelace", phone="+44 1")
    profile = UserProfileRecord(user_id=1, city="London", country="United Kingdom", linkedin_profile="https://linkedin.com/in/ada")
    return ApplicantValues.from_user(user, profile)


def test_applicant_values_split_name_and_prefer_profile() -> None:
    applicant = _applicant()
    assert applicant.first_name == "Ada"
    assert applicant.last_name == "King Lovelace"
    assert applicant.email == "ada@example.com"
    assert applicant.city == "London"


def test_match_attribute_uses_type_then_aliases() -> None:
    assert match_attribute(FormField(name="contact", type="email")) == "email"
    assert match_attribute(FormField(name="q1", label="First name")) == "first_name"
    assert match_attribute(FormField(id="linkedin_url")) == "linkedin"
    assert match_attribute(FormField(name="why_us", label="Why us?")) is None


def test_build_form_data_fills_known_fields_and_consent() -> None:
    fields = [
        FormField(name="firstname", required=True),
        FormField(name="lastname", required=True),
        FormField(name="email", type="email", required=True),
        FormField(name="phone", type="tel"),
        FormField(name="country", type="select", options=["Portugal", "United Kingdom"]),
        FormField(name="resume", type="file", required=True),
        FormField(name="gdpr", type="checkbox", label="I agree to the privacy policy"),
        FormField(name="newsletter", type="checkbox"),
        FormField(name="source", type="radio", options=["LinkedIn"]),
    ]

    form_data = asyncio.run(build_form_data(fields, _applicant(), JOB))

    assert form_data == {
        "firstname": "Ada",
        "lastname": "King Lovelace",
        "email": "ada@example.com",
        "phone": "+44 1",
        "country": "United Kingdom",
        "gdpr": True,
        "source": "LinkedIn",
    }


def test_answer_provider_fills_unmapped_fields() -> None:
    async def answers(field: FormField, applicant: ApplicantValues, job: JobRecord) -> str | None:
        return f"I want to work at {job.company}" if field.key == "motivation" else None

    fields = [FormField(name="motivation", label="Why us?", required=True)]
    form_data = asyncio.run(build_form_data(fields, _applicant(), JOB, answer_provider=answers))
    assert form_data == {"motivation": "I want to work at Acme"}


def test_unfillable_required_field_raises_validation_error() -> None:
    fields = [FormField(name="salary_expectation", required=True), FormField(name="notes")]
    with pytest.raises(FormValidationError) as excinfo:
        asyncio.run(build_form_data(fields, _applicant(), JOB))
    assert excinfo.value.field_names == ["salary_expectation"]


def test_submitter_skips_when_form_cannot_be_completed(store) -> None:
    requests: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request.url.path)
        return httpx.Response(200, json={"fields": [{"name": "salary_expectation", "required": True}]})

    automation = AutomationClient("https://worker.internal", transport=httpx.MockTransport(handler))
    submitter = ApplicationSubmitter(automation, store, RateGovernor(min_interval_seconds=0.0))
    user = add_user(store)

    async def run():
        job = await add_job(store)
        return await submitter.submit(user, job)

    result = asyncio.run(run())
    assert result.outcome == "skipped"
    assert result.message.startswith("Form validation failed:")
    assert requests == ["/introspect"]


def test_submitter_posts_filled_form(store) -> None:
    submitted: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/introspect":
            return httpx.Response(200, json=[{"name": "email", "type": "email", "required": True}])
        submitted.append(json.loads(request.content))
        return httpx.Response(200, json={"status": "success"})

    automation = AutomationClient("https://worker.internal", transport=httpx.MockTransport(handler))
    submitter = ApplicationSubmitter(automation, store, RateGovernor(min_interval_seconds=0.0))
    user = add_user(store)

    async def run():
        job = await add_job(store)
        return await submitter.submit(user, job)

    result = asyncio.run(run())
    assert result.outcome == "success"
    assert result.message == "Application submitted"
    assert submitted[0]["formData"] == {"email": "user1@example.com"}
    assert submitted[0]["job"]["applyUrl"] == "https://jobs.example.com/view/ABC123"
    assert submitted[0]["user"]["firstName"] == "Ada"


def test_submitter_reports_missing_automation_worker(store) -> None:
    submitter = ApplicationSubmitter(AutomationClient(None), store, RateGovernor(min_interval_seconds=0.0))
    user = add_user(store)

    async def run():
        job = await add_job(store)
        return await submitter.submit(user, job)

    result = asyncio.run(run())
    assert result.outcome == "error"


def test_submitter_skips_job_without_application_url(store) -> None:
    requests: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request.url.path)
        return httpx.Response(200, json=[])

    automation = AutomationClient("https://worker.internal", transport=httpx.MockTransport(handler))
    submitter = ApplicationSubmitter(automation, store, RateGovernor(min_interval_seconds=0.0))
    user = add_user(store)

    async def run():
        job = await store.create_job(user_id=user.id, title="Data Engineer", company="Acme", link=None)
        return await submitter.submit(user, job)

    result = asyncio.run(run())
    assert result.outcome == "skipped"
    assert result.message == "Job has no valid application URL"
    assert requests == []
