"""Flexible text search over knowledge objects.

Query handling, in order:

- A year-month token (``2025年8月``, ``2025-08``, ``2025/08``) is rewritten
  into every year-month spelling and matched against name, content and, for
  types that carry a date, the date field. Full dates and bare digit runs are
  ordinary terms. Only the first year-month counts as the date; later ones
  are ordinary terms.
- Multi-term query with a date token: every other term AND the date must match.
- Multi-term query without one: any term may match.
- Single term: plain case-insensitive substring over name, content, aliases
  and date.

Terms are split on whitespace only.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Literal

from .types import KnowledgeObject

_CN_YEAR_MONTH = re.compile(r"(\d{4})年(\d{1,2})月(?:\d{1,2}日)?")
_DATE_TOKEN = re.compile(r"(\d{4})[-/](\d{1,2})")

Mode = Literal["empty", "single", "any", "date"]


def date_variants(year: int, month: int) -> list[str]:
    out = [
        f"{year}{month:02d}",
        f"{year}-{month:02d}",
        f"{year}/{month:02d}",
        f"{year}年{month}月",
        f"{year}年{month:02d}月",
    ]
    return list(dict.fromkeys(out))


def parse_date_token(term: str) -> tuple[int, int] | None:
    m = _CN_YEAR_MONTH.fullmatch(term)
    if m:
        year, month = int(m.group(1)), int(m.group(2))
    else:
        m = _DATE_TOKEN.fullmatch(term)
        if not m:
            return None
        year, month = int(m.group(1)), int(m.group(2))
    if not 1 <= month <= 12:
        return None
    return year, month


@dataclass(slots=True)
class QueryPlan:
    raw: str
    mode: Mode
    terms: list[str] = field(default_factory=list)
    variants: list[str] = field(default_factory=list)


def plan_query(query: str) -> QueryPlan:
    raw = (query or "").strip()
    if not raw:
        return QueryPlan(raw="", mode="empty")

    terms: list[str] = []
    year_month: tuple[int, int] | None = None
    for term in raw.split():
        ym = parse_date_token(term)
        if ym is not None:
            if year_month is None:
                year_month = ym
            else:
                terms.append(term)
            continue
        # A Chinese year-month glued to other text still counts as the date;
        # the leftover text becomes its own term.
        m = _CN_YEAR_MONTH.search(term)
        if year_month is None and m and 1 <= int(m.group(2)) <= 12:
            year_month = (int(m.group(1)), int(m.group(2)))
            terms.extend((term[: m.start()] + " " + term[m.end() :]).split())
        else:
            terms.append(term)

    if year_month is not None:
        return QueryPlan(raw=raw, mode="date", terms=terms, variants=date_variants(*year_month))
    if len(terms) > 1:
        return QueryPlan(raw=raw, mode="any", terms=terms)
    return QueryPlan(raw=raw, mode="single", terms=terms)


def _date_field(obj: KnowledgeObject) -> str:
    if obj.rule.has_date_field and obj.date:
        return obj.date
    return ""


def _term_matches(obj: KnowledgeObject, term: str) -> bool:
    t = term.lower()
    if t in obj.name.lower() or t in obj.content.lower():
        return True
    if any(t in a.lower() for a in obj.aliases):
        return True
    return t in _date_field(obj).lower()


def _date_matches(obj: KnowledgeObject, variants: list[str]) -> bool:
    haystacks = (obj.name, obj.content, _date_field(obj))
    return any(v in h for v in variants for h in haystacks if h)


def matches(obj: KnowledgeObject, plan: QueryPlan) -> bool:
    if plan.mode == "empty":
        return True
    if plan.mode == "date":
        if not _date_matches(obj, plan.variants):
            return False
        return all(_term_matches(obj, t) for t in plan.terms)
    if plan.mode == "any":
        return any(_term_matches(obj, t) for t in plan.terms)
    return _term_matches(obj, plan.raw)
