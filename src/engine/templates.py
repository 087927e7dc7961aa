"""Email template system using Jinja2.

Send steps name a template by key (config "templateKey"). Each key maps
to templates/emails/<key>.html.j2 and a default subject line.

Template keys:
    - welcome_personal / welcome_commercial: New customer onboarding
    - renewal_personal_no_cross / renewal_personal_cross: Personal renewals
    - renewal_commercial: Commercial renewals
    - renewal_reminder: Follow-up when the renewal email wasn't opened

Templates see:
    - contact: The Contact record
    - account: Contact fields plus primary_contact_first_name
    - sender: Sender details passed by the caller

Usage:
    from src.engine.templates import render_email

    email = render_email("welcome_personal", contact, sender={"name": "Dana"})
    print(email.subject)
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import jinja2

from src.core.logging import get_logger
from src.db.models import Contact

logger = get_logger(__name__)


# Template directory
TEMPLATE_DIR = Path(__file__).parent.parent.parent / "templates" / "emails"

TEMPLATE_SUFFIX = ".html.j2"

# Default subject lines per template (Jinja2 syntax, same context as the body)
_DEFAULT_SUBJECTS: dict[str, str] = {
    "welcome_personal": "Thank you for choosing us!",
    "welcome_commercial": "Thank you for choosing us for your business!",
    "renewal_personal_no_cross": (
        "Get Ready for Your Policy Renewal, {{ account.primary_contact_first_name }}"
    ),
    "renewal_personal_cross": (
        "Get Ready for Your Policy Renewal, {{ account.primary_contact_first_name }}"
    ),
    "renewal_commercial": (
        "Get Ready for Your Policy Renewal, {{ account.primary_contact_first_name }}"
    ),
    "renewal_reminder": "Quick reminder about your upcoming renewal",
}

# Jinja2 environments (created once, reused)
_env: Optional[jinja2.Environment] = None
_subject_env: Optional[jinja2.Environment] = None


@dataclass(frozen=True)
class RenderedEmail:
    """Subject and HTML body ready for hand-off."""

    template_key: str
    subject: str
    html: str


def _get_env() -> jinja2.Environment:
    """Get or create the Jinja2 environment."""
    global _env
    if _env is None:
        _env = jinja2.Environment(
            loader=jinja2.FileSystemLoader(str(TEMPLATE_DIR)),
            autoescape=True,
            undefined=jinja2.Undefined,
        )
    return _env


def _get_subject_env() -> jinja2.Environment:
    """Plain-text environment for subject lines (no HTML escaping)."""
    global _subject_env
    if _subject_env is None:
        _subject_env = jinja2.Environment(autoescape=False, undefined=jinja2.Undefined)
    return _subject_env


def build_context(contact: Contact, **kwargs: Any) -> dict[str, Any]:
    """Template variables for a contact."""
    account = dict(contact.fields)
    account.setdefault("primary_contact_first_name", contact.first_name)
    account.setdefault("name", contact.name)
    return {"contact": contact, "account": account, **kwargs}


def render_template(template_key: str, contact: Contact, **kwargs: Any) -> str:
    """Render email body for a contact.

    Args:
        template_key: Template name (without extension)
        contact: Recipient
        **kwargs: Additional template variables (sender, etc.)

    Returns:
        Rendered HTML email body

    Raises:
        jinja2.TemplateNotFound: If template does not exist
    """
    env = _get_env()
    template = env.get_template(f"{template_key}{TEMPLATE_SUFFIX}")
    rendered: str = template.render(**build_context(contact, **kwargs))
    logger.debug(
        f"Rendered template: {template_key}",
        extra={"context": {"template": template_key, "contact_id": contact.id}},
    )
    return rendered


def get_template_subject(
    template_key: str,
    contact: Contact,
    subject: Optional[str] = None,
    **kwargs: Any,
) -> str:
    """Subject line for a template.

    Args:
        template_key: Template name
        contact: Recipient for personalization
        subject: Override pattern (e.g. from the send step's config)
        **kwargs: Additional variables

    Returns:
        Subject with variables filled in
    """
    pattern = subject or _DEFAULT_SUBJECTS.get(
        template_key, template_key.replace("_", " ").title()
    )
    try:
        template = _get_subject_env().from_string(pattern)
    except jinja2.TemplateSyntaxError:
        logger.warning(
            "Subject line is not a valid template, sending as written",
            extra={"context": {"template": template_key}},
        )
        return pattern
    return template.render(**build_context(contact, **kwargs)).strip()


def render_email(
    template_key: str,
    contact: Contact,
    subject: Optional[str] = None,
    **kwargs: Any,
) -> RenderedEmail:
    """Render subject and body together."""
    return RenderedEmail(
        template_key=template_key,
        subject=get_template_subject(template_key, contact, subject, **kwargs),
        html=render_template(template_key, contact, **kwargs),
    )


def template_exists(template_key: str) -> bool:
    if not template_key or template_key.startswith("_"):
        return False
    return (TEMPLATE_DIR / f"{template_key}{TEMPLATE_SUFFIX}").exists()


def list_templates() -> list[str]:
    """List available template keys.

    Returns:
        Sorted list of template keys (layouts starting with "_" excluded)
    """
    if not TEMPLATE_DIR.exists():
        return []

    templates = [
        p.name.replace(TEMPLATE_SUFFIX, "")
        for p in TEMPLATE_DIR.glob(f"*{TEMPLATE_SUFFIX}")
        if not p.name.startswith("_")
    ]
    return sorted(templates)


def validate_template(template_key: str) -> list[str]:
    """Validate a template.

    Checks:
        - Template file exists
        - Template parses without errors

    Args:
        template_key: Template name (without extension)

    Returns:
        List of issues (empty if valid)
    """
    issues: list[str] = []

    template_file = TEMPLATE_DIR / f"{template_key}{TEMPLATE_SUFFIX}"
    if not template_file.exists():
        issues.append(f"Template file not found: {template_file}")
        return issues

    try:
        _get_env().get_template(f"{template_key}{TEMPLATE_SUFFIX}")
    except jinja2.TemplateSyntaxError as e:
        issues.append(f"Template syntax error: {e}")

    return issues
