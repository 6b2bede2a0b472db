"""
Notification Template Engine.

Renders {{variable}} tokens in notification templates and validates that
required variables are referenced. Business contact fields are always merged
into the variable bag under "business" and never need to be declared.

Rendering never fails on missing data: unresolved tokens are left verbatim so
previews and test sends show authoring mistakes instead of erroring.
"""
import logging
import math
import os
import re
from typing import Any, Dict, List, Optional, Set

from models import (
    BusinessContext,
    NotificationChannel,
    NotificationTemplate,
    RenderedMessage,
)

logger = logging.getLogger(__name__)

TOKEN_PATTERN = re.compile(r"\{\{([^}]+)\}\}")
URL_PATTERN = re.compile(r"https?://\S+")

BUSINESS_PREFIX = "business."

SMS_SINGLE_SEGMENT_LIMIT = 160
SMS_MULTI_SEGMENT_LIMIT = 153
# Carriers shorten links to a fixed-width form
SHORT_URL_LENGTH = 23


def load_business_context() -> BusinessContext:
    """Business context from env, falling back to the shop's published details."""
    defaults = BusinessContext()
    return BusinessContext(
        name=os.getenv("BUSINESS_NAME", defaults.name),
        address=os.getenv("BUSINESS_ADDRESS", defaults.address),
        phone=os.getenv("BUSINESS_PHONE", defaults.phone),
        email=os.getenv("BUSINESS_EMAIL", defaults.email),
        hours=os.getenv("BUSINESS_HOURS", defaults.hours),
        website=os.getenv("BUSINESS_WEBSITE", defaults.website),
    )


def extract_variables(text: Optional[str]) -> Set[str]:
    """Return the trimmed names of every {{token}} in text."""
    if not text:
        return set()
    return {m.group(1).strip() for m in TOKEN_PATTERN.finditer(text)}


def _lookup(data: Dict[str, Any], path: str) -> Any:
    value: Any = data
    for part in path.split("."):
        if isinstance(value, dict) and part in value:
            value = value[part]
        else:
            return None
    return value


def substitute(text: Optional[str], data: Dict[str, Any]) -> str:
    """Replace {{name}} / {{a.b}} tokens; unknown tokens are kept as written."""
    if not text:
        return ""

    def _replace(match):
        value = _lookup(data, match.group(1).strip())
        if value is None or isinstance(value, dict):
            return match.group(0)
        return str(value)

    return TOKEN_PATTERN.sub(_replace, text)


def calculate_segment_count(text: str) -> int:
    length = len(text or "")
    if length <= SMS_SINGLE_SEGMENT_LIMIT:
        return 1
    return math.ceil(length / SMS_MULTI_SEGMENT_LIMIT)


def _merge_context(variables: Dict[str, Any], business: BusinessContext) -> Dict[str, Any]:
    merged = dict(variables or {})
    merged["business"] = business.model_dump()
    return merged


def render(
    template: NotificationTemplate,
    variables: Dict[str, Any],
    business: Optional[BusinessContext] = None,
) -> RenderedMessage:
    """Render a template with the caller's variables plus business context."""
    data = _merge_context(variables, business or load_business_context())

    text = substitute(template.text_template, data)
    unresolved = extract_variables(text)
    if unresolved:
        logger.warning(
            f"Template {template.template_id} rendered with unresolved variables: {sorted(unresolved)}"
        )
    if template.channel == NotificationChannel.SMS:
        return RenderedMessage(
            text=text,
            character_count=len(text),
            segment_count=calculate_segment_count(text),
        )

    return RenderedMessage(
        subject=substitute(template.subject_template, data),
        html=substitute(template.html_template, data) if template.html_template else None,
        text=text,
        character_count=len(text),
        segment_count=1,
    )


def _referenced_variables(template: NotificationTemplate) -> Set[str]:
    referenced: Set[str] = set()
    for field in (template.subject_template, template.html_template, template.text_template):
        referenced |= extract_variables(field)
    return referenced


def validate_template(template: NotificationTemplate) -> List[str]:
    """
    Check every required variable is referenced by at least one pattern.
    A required "pet" is satisfied by {{pet}} or any {{pet.field}}.
    Returns a list of error strings (empty when valid).
    """
    referenced = _referenced_variables(template)
    errors = []
    for variable in template.variables:
        if not variable.required or variable.name.startswith(BUSINESS_PREFIX):
            continue
        prefix = variable.name + "."
        if not any(ref == variable.name or ref.startswith(prefix) for ref in referenced):
            errors.append(f"Required variable '{variable.name}' is not used in template")
    return errors


def find_undeclared_variables(template: NotificationTemplate) -> List[str]:
    """Tokens used in the template but never declared (business.* excluded)."""
    declared = {v.name for v in template.variables}
    undeclared = []
    for ref in sorted(_referenced_variables(template)):
        if ref.startswith(BUSINESS_PREFIX):
            continue
        root = ref.split(".", 1)[0]
        if ref not in declared and root not in declared:
            undeclared.append(ref)
    return undeclared


def estimate_max_length(template: NotificationTemplate) -> int:
    """
    Worst-case SMS length: static text plus each variable's max_length.
    Links in the static text count as a shortened URL.
    """
    body = template.text_template or ""
    max_lengths = {v.name: v.max_length for v in template.variables if v.max_length}

    total = 0
    for match in TOKEN_PATTERN.finditer(body):
        name = match.group(1).strip()
        total += max_lengths.get(name, len(match.group(0)))

    static = TOKEN_PATTERN.sub("", body)
    for url in URL_PATTERN.findall(static):
        total += SHORT_URL_LENGTH
    static = URL_PATTERN.sub("", static)
    return total + len(static)


def render_preview(
    template: NotificationTemplate,
    sample_data: Dict[str, Any],
    business: Optional[BusinessContext] = None,
) -> Dict[str, Any]:
    """Rendered message plus authoring warnings for the admin preview."""
    rendered = render(template, sample_data, business)
    preview = rendered.model_dump()
    preview["errors"] = validate_template(template)
    preview["undeclared_variables"] = find_undeclared_variables(template)
    preview["unresolved_variables"] = sorted(
        extract_variables(rendered.text) | extract_variables(rendered.subject) | extract_variables(rendered.html)
    )
    if template.channel == NotificationChannel.SMS:
        preview["estimated_max_length"] = estimate_max_length(template)
    return preview
