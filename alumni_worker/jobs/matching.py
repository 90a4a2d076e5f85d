"""Job-match recalculation: every active job against every candidate profile."""

import logging
from typing import Any

from alumni_worker.queue.batch import for_each_nested
from alumni_worker.queue.errors import BatchAbortedError
from alumni_worker.queue.models import ExecutionContext, ExecutionResult, Success
from .base import batch_aborted

logger = logging.getLogger(__name__)

RECALCULATE_MATCHES = "jobs.recalculate_matches"

JOB_CHUNK_SIZE = 10
USER_CHUNK_SIZE = 50

# Scoring weights (must total 1.0)
WEIGHT_CONNECTIONS = 0.35
WEIGHT_SKILLS = 0.25
WEIGHT_EDUCATION = 0.20
WEIGHT_CIRCLES = 0.20

SENIOR_KEYWORDS = ('senior', 'lead', 'principal', 'director', 'manager', 'vp', 'head of', 'chief')
TECH_DEGREES = ('computer science', 'software engineering', 'information technology', 'engineering')
BUSINESS_DEGREES = ('business', 'mba', 'management', 'marketing', 'finance')
PRESTIGIOUS_SCHOOLS = ('harvard', 'stanford', 'mit', 'berkeley', 'yale', 'princeton', 'columbia')


def _is_senior(title: str) -> bool:
    title = (title or "").lower()
    return any(k in title for k in SENIOR_KEYWORDS)


def connection_score(user: dict) -> float:
    """Mutual connections at the hiring company, diminishing returns."""
    connections = user.get("mutual_connections") or []
    if not connections:
        return 0.0
    base = min(len(connections) * 20, 80)
    senior_bonus = sum(10 for c in connections if _is_senior(c.get("title", "")))
    return float(min(base + senior_bonus, 100))


def skills_score(user: dict, job: dict) -> float:
    user_skills = {s.lower() for s in user.get("skills") or []}
    job_skills = {s.lower() for s in job.get("skills_required") or []}
    if not user_skills or not job_skills:
        return 50.0  # Neutral without data
    matched = len(user_skills & job_skills) / len(job_skills) * 100
    extra_bonus = max(0, len(user_skills) - len(job_skills)) * 2
    return float(min(matched + extra_bonus, 100))


def _degree_relevant(degree: str, title: str, description: str) -> bool:
    is_tech = any(w in title for w in ('engineer', 'developer', 'technical')) or 'programming' in description
    is_business = any(w in title for w in ('manager', 'director', 'analyst')) or 'business' in description
    if is_tech:
        return any(d in degree for d in TECH_DEGREES)
    if is_business:
        return any(d in degree for d in BUSINESS_DEGREES)
    return False


def education_score(user: dict, job: dict) -> float:
    educations = user.get("educations") or []
    if not educations:
        return 30.0
    title = (job.get("title") or "").lower()
    description = (job.get("description") or "").lower()
    job_words = set(f"{title} {description}".split())

    score = 0
    for education in educations:
        degree = (education.get("degree") or "").lower()
        field = (education.get("field_of_study") or "").lower()
        school = (education.get("school") or "").lower()
        if _degree_relevant(degree, title, description):
            score += 30
        if field and set(field.split()) & job_words:
            score += 40
        if any(k in school for k in PRESTIGIOUS_SCHOOLS):
            score += 10
    return float(min(score, 100))


def circle_score(user: dict) -> float:
    """Shared alumni circles with current company employees."""
    return float(min((user.get("circle_overlap") or 0) * 20, 100))


def match_score(job: dict, user: dict) -> dict[str, Any]:
    parts = {
        "connection_score": connection_score(user),
        "skills_score": skills_score(user, job),
        "education_score": education_score(user, job),
        "circle_score": circle_score(user),
    }
    total = (
        parts["connection_score"] * WEIGHT_CONNECTIONS
        + parts["skills_score"] * WEIGHT_SKILLS
        + parts["education_score"] * WEIGHT_EDUCATION
        + parts["circle_score"] * WEIGHT_CIRCLES
    )
    return {"score": round(total, 2), **parts}


class RecalculateMatchesHandler:
    """Nightly recalculation of job match scores.

    Outer batch: active jobs. Inner batch: candidate profiles for that job,
    as served by the backend with connection and circle data attached.
    A failing pair is counted and skipped.
    """

    def __init__(self, backend, failure_threshold: float = 1.0, progress_every: int = 100):
        self.backend = backend
        self.failure_threshold = failure_threshold
        self.progress_every = progress_every

    async def handle(self, payload: dict, ctx: ExecutionContext) -> ExecutionResult:
        min_score = payload.get("min_score", 0)
        stored = 0

        def candidates_for(job: dict):
            return self.backend.page_fetcher(f"/api/jobs/{job['id']}/candidates", {"has_profile": 1})

        async def score_pair(job: dict, user: dict) -> None:
            nonlocal stored
            result = match_score(job, user)
            if result["score"] < min_score:
                return
            await self.backend.post(f"/api/jobs/{job['id']}/matches", {"user_id": user["id"], **result})
            stored += 1

        try:
            cursor = await for_each_nested(
                self.backend.page_fetcher("/api/jobs", {"status": "active"}),
                candidates_for,
                score_pair,
                outer_chunk_size=payload.get("job_chunk_size", JOB_CHUNK_SIZE),
                inner_chunk_size=payload.get("user_chunk_size", USER_CHUNK_SIZE),
                source="job matches",
                start_offset=payload.get("start_offset", 0),
                progress_every=self.progress_every,
            )
        except BatchAbortedError as e:
            return batch_aborted(e, ctx, start_offset=e.cursor.offset if e.cursor else None)
        result = cursor.to_result(self.failure_threshold)
        if isinstance(result, Success):
            return Success({**result.output, "stored": stored})
        return result
