"""GitHub public profile and repository adapter."""
from __future__ import annotations

from collections import Counter
from typing import Any, Dict, List, Mapping

from cvrag.auth import SourceGrant
from cvrag.errors import PermanentSourceError
from cvrag.models import Category, Fact, SourceName, SourceRecord, normalize_key
from cvrag.sources.base import SourceAdapter, clean_text, parse_datetime
from cvrag.validation import FieldGroup, SENSITIVE_FIELDS, SourceSchema

PROFILE_FIELDS = frozenset(
    {"login", "name", "bio", "company", "blog", "html_url", "public_repos", "followers", "created_at", "updated_at"}
)
REPOSITORY_FIELDS = frozenset(
    {"name", "description", "language", "stargazers_count", "html_url", "topics", "pushed_at", "fork"}
)


def decode_github(payload: Mapping[str, Any], record: SourceRecord) -> List[Fact]:
    profile = payload.get("profile") or {}
    repositories = payload.get("repositories") or []
    fetched_at = record.fetched_at
    facts: List[Fact] = []

    bio = clean_text(profile.get("bio"))
    if bio:
        facts.append(
            Fact(
                category=Category.SUMMARY,
                key=normalize_key("github", "bio"),
                text=bio,
                source=SourceName.GITHUB,
                fetched_at=fetched_at,
                observed_at=parse_datetime(profile.get("updated_at")),
                reference=profile.get("html_url"),
            )
        )

    languages: Counter[str] = Counter()
    for repo in repositories:
        name = clean_text(repo.get("name"))
        if not name or repo.get("fork"):
            continue
        language = clean_text(repo.get("language"))
        if language:
            languages[language] += 1
        parts = [name]
        description = clean_text(repo.get("description"))
        if description:
            parts.append(f"{description.rstrip('.')}.")
        if language:
            parts.append(f"Written mainly in {language}.")
        stars = repo.get("stargazers_count")
        if isinstance(stars, int) and stars > 0:
            parts.append(f"{stars} stars on GitHub.")
        topics = [clean_text(topic) for topic in repo.get("topics") or [] if clean_text(topic)]
        if topics:
            parts.append(f"Topics: {', '.join(topics)}.")
        attributes: Dict[str, str] = {}
        if language:
            attributes["language"] = language
        facts.append(
            Fact(
                category=Category.PROJECTS,
                key=normalize_key(name),
                text=f"{parts[0]}: {' '.join(parts[1:])}" if len(parts) > 1 else parts[0],
                source=SourceName.GITHUB,
                fetched_at=fetched_at,
                observed_at=parse_datetime(repo.get("pushed_at")),
                attributes=attributes,
                reference=repo.get("html_url"),
            )
        )

    for language, count in sorted(languages.items(), key=lambda item: (-item[1], item[0])):
        noun = "repository" if count == 1 else "repositories"
        facts.append(
            Fact(
                category=Category.SKILLS,
                key=normalize_key(language),
                text=f"{language} (used in {count} public {noun})",
                source=SourceName.GITHUB,
                fetched_at=fetched_at,
            )
        )
    return facts


class GitHubAdapter(SourceAdapter):
    name = SourceName.GITHUB
    schema_version = "1"

    def _headers(self, grant: SourceGrant) -> Dict[str, str]:
        headers = {"Accept": "application/vnd.github+json", "X-GitHub-Api-Version": "2022-11-28"}
        if grant.token:
            headers["Authorization"] = f"Bearer {grant.token}"
        return headers

    async def _fetch_payload(self, grant: SourceGrant) -> Dict[str, Any]:
        base = self.settings.base_url.rstrip("/")
        headers = self._headers(grant)
        profile = await self._get_json(f"{base}/users/{grant.account}", headers=headers)
        repositories = await self._get_json(
            f"{base}/users/{grant.account}/repos",
            params={"sort": "pushed", "per_page": 30, "type": "owner"},
            headers=headers,
        )
        if not isinstance(profile, dict):
            raise PermanentSourceError(self.name.value, "unexpected profile response shape")
        return {"profile": profile, "repositories": repositories}

    @classmethod
    def schema(cls) -> SourceSchema:
        return SourceSchema(
            source=cls.name,
            version=cls.schema_version,
            groups=(
                FieldGroup("profile", PROFILE_FIELDS),
                FieldGroup("repositories", REPOSITORY_FIELDS, many=True),
            ),
            identity=(("profile", "login"),),
            decoder=decode_github,
            sensitive=SENSITIVE_FIELDS,
        )


__all__ = ["GitHubAdapter", "decode_github"]
