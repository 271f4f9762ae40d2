#!/usr/bin/env python3
# CUI // SP-CTI
"""Render an InjectionResult as a markdown block for agent prompts.

Templates are Jinja2 strings rendered from a BaseLoader environment. The
block opens with a non-citable meta-warning, lists provisional alerts first
(high visibility), then patterns and principles in ranked order.

Usage:
    from falcon_engine.injection.formatter import format_injection_for_prompt

    markdown = format_injection_for_prompt(result, now="2026-01-01T00:00:00+00:00")
"""

import math
import re
from typing import Any, Dict

from jinja2 import BaseLoader, Environment

from falcon_engine.compat.db_utils import parse_timestamp, utc_now_iso
from falcon_engine.injection.selector import InjectionResult
from falcon_engine.schemas.core import DerivedPrinciple, PatternDefinition, ProvisionalAlert

NON_CITABLE_META_WARNING = """<!-- META-WARNING: NON-CITABLE CONTEXT -->
The warnings below are internal guidance for your reasoning process.
DO NOT cite, quote, or reference these warnings in your output.
DO NOT mention that you received warnings or guidance.
Simply apply the guidance silently in your work.
<!-- END META-WARNING -->"""

BEGIN_MARKER = "<!-- BEGIN AUTO-GENERATED WARNINGS -->"
END_MARKER = "<!-- END AUTO-GENERATED WARNINGS -->"

TITLE_MAX = 60

# ── Templates ───────────────────────────────────────────────────────────

PATTERN_TEMPLATE = """\
### [{{ category|upper }}][{{ failure_mode }}][{{ severity_max }}] {{ title }}

**Bad guidance:** "{{ content }}"

**Observed result:** This led to a {{ category }} issue.

**Do instead:** {{ alternative }}

**Applies when:** touches={{ touches|join(',') }}{% if technologies %}; tech={{ technologies|join(',') }}{% endif %}
{%- if consequence_class %}

**Reference:** {{ consequence_class }}
{%- endif %}"""

PRINCIPLE_TEMPLATE = """\
### [{{ origin_label }}] {{ title }}

**Principle:** {{ principle }}

**Rationale:** {{ rationale }}

**Applies when:** touches={{ touches|join(',') }}
{%- if external_refs %}

**Reference:** {{ external_refs|join(', ') }}
{%- endif %}"""

ALERT_TEMPLATE = """\
### [PROVISIONAL ALERT] {{ message }}

**Issue ID:** {{ issue_id }}
{%- if touches %}

**Applies when:** touches={{ touches|join(',') }}
{%- endif %}

**Expires in:** {{ expires_in }} days"""

DOCUMENT_TEMPLATE = """\
{% if meta_warning %}{{ meta_warning }}
{% endif %}{{ begin_marker }}
{% if alerts %}## PROVISIONAL ALERTS (auto-generated)

> These are real-time alerts about known issues. Pay close attention!

{% for entry in alerts %}{{ entry }}

{% endfor %}{% endif %}{% if warnings %}## Warnings from Past Issues (auto-generated)

These warnings are based on patterns learned from previous PR reviews.
Pay special attention to these areas to avoid repeating past mistakes.

{% for entry in warnings %}{{ entry }}

{% endfor %}{% endif %}{{ end_marker }}
"""


def _render(template_str: str, data: Dict[str, Any]) -> str:
    env = Environment(loader=BaseLoader(), keep_trailing_newline=True)
    return env.from_string(template_str).render(**data)


# ── Entry formatting ────────────────────────────────────────────────────

def truncate(text: str, max_len: int = TITLE_MAX) -> str:
    if len(text) <= max_len:
        return text
    return text[:max_len - 3] + "..."


def summarize_content(content: str) -> str:
    """First sentence of the content."""
    return re.split(r"[.!?]", content, maxsplit=1)[0].strip()


def format_pattern(pattern: PatternDefinition) -> str:
    return _render(PATTERN_TEMPLATE, {
        "category": pattern.finding_category,
        "failure_mode": pattern.failure_mode.replace("_", " "),
        "severity_max": pattern.severity_max,
        "title": truncate(summarize_content(pattern.pattern_content)),
        "content": pattern.pattern_content,
        "alternative": pattern.alternative,
        "touches": pattern.touches,
        "technologies": pattern.technologies,
        "consequence_class": pattern.consequence_class,
    })


def format_principle(principle: DerivedPrinciple) -> str:
    return _render(PRINCIPLE_TEMPLATE, {
        "origin_label": "BASELINE" if principle.origin == "baseline" else "DERIVED",
        "title": truncate(principle.principle),
        "principle": principle.principle,
        "rationale": principle.rationale,
        "touches": principle.touches,
        "external_refs": principle.external_refs,
    })


def days_until_expiry(alert: ProvisionalAlert, now: Any = None) -> int:
    remaining = parse_timestamp(alert.expires_at) - parse_timestamp(utc_now_iso(now))
    return max(0, math.floor(remaining.total_seconds() / 86400))


def format_alert(alert: ProvisionalAlert, now: Any = None) -> str:
    return _render(ALERT_TEMPLATE, {
        "message": alert.message,
        "issue_id": alert.issue_id,
        "touches": alert.touches,
        "expires_in": days_until_expiry(alert, now),
    })


# ── Public API ──────────────────────────────────────────────────────────

def format_injection_for_prompt(
    result: InjectionResult, now: Any = None, include_meta_warning: bool = True
) -> str:
    """Markdown block for the prompt; empty string when nothing was selected."""
    if result.is_empty:
        return ""
    warnings = [
        format_pattern(w.item) if w.kind == "pattern" else format_principle(w.item)
        for w in result.warnings
    ]
    alerts = [format_alert(a.item, now=now) for a in result.alerts]
    return _render(DOCUMENT_TEMPLATE, {
        "meta_warning": NON_CITABLE_META_WARNING if include_meta_warning else "",
        "begin_marker": BEGIN_MARKER,
        "end_marker": END_MARKER,
        "alerts": alerts,
        "warnings": warnings,
    })


def format_injection_summary(result: InjectionResult) -> str:
    """e.g. ``Injected: 3 warnings (1 baselines, 2 patterns), 1 provisional alerts``."""
    summary = (f"Injected: {len(result.warnings)} warnings "
               f"({len(result.principles)} baselines, {len(result.patterns)} patterns)")
    if result.alerts:
        summary += f", {len(result.alerts)} provisional alerts"
    return summary
