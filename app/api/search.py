from __future__ import annotations

from decimal import Decimal
from typing import Annotated, Literal

from fastapi import APIRouter, Depends, Query

from app.api.ratelimit import API_LIMIT, require_rate_limit
from app.db.stores import course_repo
from app.repos.course_repo import MAX_PER_PAGE, CourseQuery
from app.schemas.responses import course_out, pagination, success
from app.services.cache import SEARCH_TTL, cache_service, course_search_key, read_through

CourseLevel = Literal["beginner", "intermediate", "advanced"]

router = APIRouter(
    prefix="/v1/search",
    tags=["search"],
    dependencies=[Depends(require_rate_limit(API_LIMIT))],
)


@router.get("/courses")
async def search_courses(
    q: Annotated[str | None, Query(max_length=200)] = None,
    level: CourseLevel | None = None,
    max_price: Annotated[Decimal | None, Query(ge=0)] = None,
    page: Annotated[int, Query(ge=1)] = 1,
    per_page: Annotated[int, Query(ge=1)] = 10,
) -> dict:
    query = CourseQuery(
        q=(q or "").strip() or None,
        level=level,
        max_price=max_price,
        page=page,
        per_page=min(per_page, MAX_PER_PAGE),
    )

    async def load() -> dict:
        courses, total = await course_repo.search(query)
        return {
            "items": [course_out(c) for c in courses],
            "meta": pagination(query.page, query.per_page, total),
        }

    # q is lowercased for the key only; matching is case-insensitive anyway
    key = course_search_key(
        {
            "q": query.q.lower() if query.q else "",
            "level": query.level,
            "max_price": _price_key(query.max_price),
            "page": query.page,
            "per_page": query.per_page,
        }
    )
    results = await read_through(cache_service, key, SEARCH_TTL, load)
    return success(results["items"], meta={"query": q or "", **results["meta"]})


def _price_key(price: Decimal | None) -> str | None:
    # 50, 50.0 and 50.00 filter identically and share one cache entry
    return None if price is None else format(price.normalize(), "f")
