from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from autoapply.core.errors import (
    AutomationNotConfiguredError,
    FormValidationError,
    MalformedResponseError,
    RateLimitedError,
    TransientNetworkError,
)
from autoapply.core.urls import is_http_url
from autoapply.crawl.rate_governor import RateGovernor
from autoapply.jobs.form_data import AnswerProvider, ApplicantValues, build_form_data
from autoapply.schemas.automation import SubmitOutcome
from autoapply.services.automation_client import AutomationClient
from autoapply.services.repository import ApplyRepository, JobRecord, UserRecord

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SubmissionResult:
    outcome: SubmitOutcome
    message: str


class ApplicationSubmitter:
    """Introspects a posting's form, fills it from the applicant's profile and submits it."""

    def __init__(
        self,
        automation: AutomationClient,
        repository: ApplyRepository,
        governor: RateGovernor,
        *,
        answer_provider: AnswerProvider | None = None,
    ) -> None:
        self._automation = automation
        self._repository = repository
        self._governor = governor
        self._answer_provider = answer_provider

    async def submit(self, user: UserRecord, job: JobRecord) -> SubmissionResult:
        if job.link is None or not is_http_url(job.link):
            return SubmissionResult(outcome="skipped", message="Job has no valid application URL")

        profile = await self._repository.get_user_profile(user.id)
        applicant = ApplicantValues.from_user(user, profile)
        try:
            fields = await self._governor.schedule(self._automation.introspect, job.link)
            form_data = await build_form_data(fields, applicant, job, answer_provider=self._answer_provider)
            result = await self._governor.schedule(
                self._automation.submit,
                self._payload(user, applicant, job, form_data),
            )
        except AutomationNotConfiguredError as exc:
            logger.error("automation worker not configured; cannot submit job_id=%s", job.id)
            return SubmissionResult(outcome="error", message=str(exc))
        except FormValidationError as exc:
            return SubmissionResult(outcome="skipped", message=f"Form validation failed: {exc}")
        except RateLimitedError as exc:
            message = f"Automation worker rate limited; retry after {exc.retry_after:.0f}s"
            return SubmissionResult(outcome="error", message=message)
        except (MalformedResponseError, TransientNetworkError) as exc:
            logger.warning("submission failed job_id=%s error=%s", job.id, exc)
            return SubmissionResult(outcome="error", message=str(exc))

        return SubmissionResult(outcome=result.outcome, message=result.message or _DEFAULT_MESSAGES[result.outcome])

    @staticmethod
    def _payload(
        user: UserRecord,
        applicant: ApplicantValues,
        job: JobRecord,
        form_data: dict[str, str | bool],
    ) -> dict[str, Any]:
        return {
            "user": {
                "id": user.id,
                "name": applicant.full_name,
                "email": applicant.email,
                "phone": applicant.phone,
                "firstName": applicant.first_name,
                "lastName": applicant.last_name,
            },
            "job": {
                "id": job.id,
                "jobTitle": job.title,
                "company": job.company,
                "description": job.description,
                "applyUrl": job.link,
                "location": job.location,
                "source": job.source,
                "externalJobId": job.external_job_id,
            },
            "matchScore": job.match_score,
            "formData": form_data,
        }


_DEFAULT_MESSAGES: dict[str, str] = {
    "success": "Application submitted",
    "processing": "Accepted by automation worker for asynchronous completion",
    "skipped": "Skipped by automation worker",
    "error": "Automation worker reported an error",
}
