from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from autoapply.core.errors import FormValidationError
from autoapply.schemas.automation import FormField
from autoapply.services.repository import JobRecord, UserProfileRecord, UserRecord

logger = logging.getLogger(__name__)

AnswerProvider = Callable[[FormField, "ApplicantValues", JobRecord], Awaitable[str | None]]

_CONSENT_MARKERS = ("agree", "consent", "accept", "terms", "privacy", "gdpr", "acknowledge")
_SKIPPED_TYPES = {"file", "hidden", "submit", "button"}

# alias -> applicant attribute; matched against lowercased field name and label
_FIELD_ALIASES: tuple[tuple[tuple[str, ...], str], ...] = (
    (("first name", "firstname", "first_name", "given name"), "first_name"),
    (("last name", "lastname", "last_name", "surname", "family name"), "last_name"),
    (("full name", "fullname", "full_name", "your name"), "full_name"),
    (("email", "e-mail"), "email"),
    (("phone", "mobile", "telephone"), "phone"),
    (("linkedin",), "linkedin"),
    (("github",), "github"),
    (("portfolio",), "portfolio"),
    (("website", "personal site", "homepage"), "website"),
    (("zip", "postal", "postcode"), "zip_code"),
    (("city", "town"), "city"),
    (("state", "province", "region"), "state"),
    (("country",), "country"),
    (("address", "street"), "address"),
)


@dataclass(slots=True)
class ApplicantValues:
    first_name: str | None = None
    last_name: str | None = None
    full_name: str | None = None
    email: str | None = None
    phone: str | None = None
    address: str | None = None
    city: str | None = None
    state: str | None = None
    zip_code: str | None = None
    country: str | None = None
    linkedin: str | None = None
    github: str | None = None
    website: str | None = None
    portfolio: str | None = None

    @classmethod
    def from_user(cls, user: UserRecord, profile: UserProfileRecord | None) -> ApplicantValues:
        full_name = (profile.full_name if profile else None) or user.full_name
        first_name = last_name = None
        if full_name:
            parts = full_name.split()
            first_name = parts[0]
            last_name = " ".join(parts[1:]) or None
        return cls(
            first_name=first_name,
            last_name=last_name,
            full_name=full_name,
            email=(profile.email if profile else None) or user.email,
            phone=(profile.phone_number if profile else None) or user.phone,
            address=profile.address if profile else None,
            city=profile.city if profile else None,
            state=profile.state if profile else None,
            zip_code=profile.zip_code if profile else None,
            country=profile.country if profile else None,
            linkedin=profile.linkedin_profile if profile else None,
            github=profile.github_profile if profile else None,
            website=profile.personal_website if profile else None,
            portfolio=profile.portfolio_link if profile else None,
        )


def match_attribute(field: FormField) -> str | None:
    if field.type == "email":
        return "email"
    if field.type == "tel":
        return "phone"
    haystacks = [value.lower() for value in (field.key, field.label, field.placeholder) if value]
    for aliases, attribute in _FIELD_ALIASES:
        if any(alias in haystack for alias in aliases for haystack in haystacks):
            return attribute
    return None


def _choose_option(field: FormField, value: str) -> str | None:
    wanted = value.strip().casefold()
    for option in field.options:
        if option.value.casefold() == wanted or (option.label or "").casefold() == wanted:
            return option.value
    if len(field.options) == 1:
        return field.options[0].value
    return None


async def build_form_data(
    fields: list[FormField],
    applicant: ApplicantValues,
    job: JobRecord,
    *,
    answer_provider: AnswerProvider | None = None,
) -> dict[str, str | bool]:
    """Populate introspected form fields; raises FormValidationError for unfillable required fields."""
    form_data: dict[str, str | bool] = {}
    missing: list[str] = []

    for field in fields:
        key = field.key
        if not key or field.type in _SKIPPED_TYPES:
            continue

        if field.type == "checkbox":
            text = f"{key} {field.label or ''}".lower()
            checked = any(marker in text for marker in _CONSENT_MARKERS)
            if checked or field.required:
                form_data[key] = True
            continue

        value: str | None = None
        attribute = match_attribute(field)
        if attribute is not None:
            value = getattr(applicant, attribute)
        if not value and answer_provider is not None:
            value = await answer_provider(field, applicant, job)

        if value and field.options:
            value = _choose_option(field, value)
        elif not value and field.options and len(field.options) == 1:
            value = field.options[0].value

        if value:
            form_data[key] = value
        elif field.required:
            missing.append(key)

    if missing:
        logger.info("required form fields left empty job_id=%s fields=%s", job.id, ",".join(missing))
        raise FormValidationError(f"cannot populate required fields: {', '.join(missing)}", field_names=missing)
    return form_data
