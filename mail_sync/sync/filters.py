"""
Noise filter: decides which emails are never worth ingesting.

Tuned for precision. Missing some junk is fine; dropping a real client
email is not, so the lists stay short and specific.
"""

from mail_sync.config import settings
from mail_sync.core.logging import get_logger
from mail_sync.core.models import ParsedEmail

log = get_logger(__name__)

EXCLUDED_LABELS = frozenset({"SPAM", "TRASH", "DRAFT"})

MARKETING_DOMAINS = frozenset({
    "spotify.com",
    "netflix.com",
    "linkedin.com",
    "facebookmail.com",
    "twitter.com",
    "x.com",
    "instagram.com",
    "pinterest.com",
    "youtube.com",
    "medium.com",
    "substack.com",
    "mailchimp.com",
    "mailchimpapp.com",
    "sendgrid.net",
    "hubspotemail.net",
    "constantcontact.com",
    "amazonses.com",
    "marketo.com",
    "klaviyomail.com",
    "shopify.com",
    "groupon.com",
    "quora.com",
})

PROMOTIONAL_KEYWORDS = (
    "newsletter",
    "unsubscribe",
    "password reset",
    "reset your password",
    "verify your email",
    "special offer",
    "limited time offer",
    "webinar",
)


def _domain_matches(domain: str, denylist: frozenset[str]) -> bool:
    """Exact domain or any subdomain of a denylisted domain."""
    if not domain:
        return False
    if domain in denylist:
        return True
    return any(domain.endswith("." + blocked) for blocked in denylist)


def rejection_reason(email: ParsedEmail) -> str | None:
    """
    Explain why an email would be dropped.

    Args:
        email: Decoded email

    Returns:
        "label", "marketing_domain" or "promotional_subject", or None to keep it
    """
    if EXCLUDED_LABELS.intersection(email.labels):
        return "label"

    domains = MARKETING_DOMAINS | {d.lower() for d in settings.noise_extra_domains}
    if _domain_matches(email.sender_domain, domains):
        return "marketing_domain"

    subject = (email.subject or "").lower()
    keywords = PROMOTIONAL_KEYWORDS + tuple(k.lower() for k in settings.noise_extra_keywords)
    if any(keyword in subject for keyword in keywords):
        return "promotional_subject"

    return None


def should_process(email: ParsedEmail) -> bool:
    """True unless one of the noise rules rejects the email."""
    reason = rejection_reason(email)
    if reason:
        log.debug("email_filtered", message_id=email.id, reason=reason, sender=email.from_email)
        return False
    return True
