"""LinkedIn member profile adapter (requires member consent)."""
from __future__ import annotations

from typing import Any, Dict, List, Mapping

from cvrag.auth import SourceGrant
from cvrag.errors import PermanentSourceError
from cvrag.models import Category, Fact, SourceName, SourceRecord, normalize_key
from cvrag.sources.base import SourceAdapter, clean_text, date_range, normalize_month, parse_datetime
from cvrag.validation import FieldGroup, SourceSchema

PROFILE_FIELDS = frozenset({"id", "first_name", "last_name", "headline", "summary", "vanity_name", "industry"})
POSITION_FIELDS = frozenset({"title", "company", "start_date", "end_date", "description", "is_current"})
SKILL_FIELDS = frozenset({"name"})
EDUCATION_FIELDS = frozenset({"school", "degree", "field_of_study", "start_date", "end_date"})
CERTIFICATION_FIELDS = frozenset({"name", "authority", "issued_at"})


def decode_linkedin(payload: Mapping[str, Any], record: SourceRecord) -> List[Fact]:
    profile = payload.get("profile") or {}
    fetched_at = record.fetched_at
    facts: List[Fact] = []

    def add(category: Category, key: str, text: str, **extra: Any) -> None:
        if key and text:
            facts.append(
                Fact(category=category, key=key, text=text, source=SourceName.LINKEDIN, fetched_at=fetched_at, **extra)
            )

    headline = clean_text(profile.get("headline"))
    summary = clean_text(profile.get("summary"))
    if headline or summary:
        text = ". ".join(part.rstrip(".") for part in (headline, summary) if part) + "."
        add(Category.SUMMARY, normalize_key("linkedin", "summary"), text)

    for position in payload.get("positions") or []:
        title = clean_text(position.get("title"))
        company = clean_text(position.get("company"))
        if not title or not company:
            continue
        start = normalize_month(position.get("start_date"))
        end = None if position.get("is_current") else normalize_month(position.get("end_date"))
        attributes = {"start_date": start or "", "end_date": end or "present"}
        text = f"{title} at {company}{date_range(start, end)}."
        description = clean_text(position.get("description"))
        if description:
            text = f"{text} {description}"
        add(
            Category.EXPERIENCE,
            normalize_key(title, company),
            text,
            observed_at=parse_datetime(end) if end else fetched_at,
            attributes=attributes,
        )

    for skill in payload.get("skills") or []:
        name = clean_text(skill.get("name"))
        add(Category.SKILLS, normalize_key(name), name)

    for entry in payload.get("education") or []:
        school = clean_text(entry.get("school"))
        if not school:
            continue
        degree = clean_text(entry.get("degree"))
        field_of_study = clean_text(entry.get("field_of_study"))
        start = normalize_month(entry.get("start_date"))
        end = normalize_month(entry.get("end_date"))
        qualification = ", ".join(part for part in (degree, field_of_study) if part)
        text = f"{qualification} at {school}" if qualification else school
        add(
            Category.EDUCATION,
            normalize_key(school, degree),
            f"{text}{date_range(start, end)}.",
            observed_at=parse_datetime(end),
            attributes={"start_date": start or "", "end_date": end or ""},
        )

    for certification in payload.get("certifications") or []:
        name = clean_text(certification.get("name"))
        authority = clean_text(certification.get("authority"))
        issued = normalize_month(certification.get("issued_at"))
        text = name
        if authority:
            text = f"{text} issued by {authority}"
        if issued:
            text = f"{text} ({issued})"
        add(Category.CERTIFICATIONS, normalize_key(name), text, observed_at=parse_datetime(issued))
    return facts


class LinkedInAdapter(SourceAdapter):
    name = SourceName.LINKEDIN
    schema_version = "1"
    required_scope = "r_fullprofile"

    async def _fetch_payload(self, grant: SourceGrant) -> Dict[str, Any]:
        base = self.settings.base_url.rstrip("/")
        data = await self._get_json(
            f"{base}/v2/me",
            params={"projection": "full"},
            headers={"Authorization": f"Bearer {grant.token}", "X-Restli-Protocol-Version": "2.0.0"},
        )
        if not isinstance(data, dict):
            raise PermanentSourceError(self.name.value, "unexpected profile response shape")
        return data

    @classmethod
    def schema(cls) -> SourceSchema:
        return SourceSchema(
            source=cls.name,
            version=cls.schema_version,
            groups=(
                FieldGroup("profile", PROFILE_FIELDS),
                FieldGroup("positions", POSITION_FIELDS, many=True),
                FieldGroup("skills", SKILL_FIELDS, many=True),
                FieldGroup("education", EDUCATION_FIELDS, many=True),
                FieldGroup("certifications", CERTIFICATION_FIELDS, many=True),
            ),
            identity=(("profile", "id"),),
            decoder=decode_linkedin,
        )


__all__ = ["LinkedInAdapter", "decode_linkedin"]
