"""Recipient resolution per notification type and channel."""

from __future__ import annotations

import re
from collections.abc import Sequence
from typing import Any

from .dto import Channel, Installment, NotificationType, Recipient

_E164 = re.compile(r"^\+[1-9]\d{7,14}$")
_EMAIL = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def format_phone_e164(phone: str) -> str:
    """Normalise a phone number to E.164.

    Australian local (``04xx xxx xxx``) and country-code (``61...``) forms
    become ``+61`` followed by nine digits; other numbers already in E.164
    pass through.

    Raises:
        ValueError: If the number cannot be normalised
    """
    cleaned = re.sub(r"[^\d+]", "", phone or "")
    if cleaned.startswith("+61") or cleaned.startswith("61"):
        if not cleaned.startswith("+"):
            cleaned = "+" + cleaned
        if len(cleaned) != 12:
            raise ValueError(f"invalid AU phone number: {phone!r}")
        return cleaned
    if cleaned.startswith("0"):
        cleaned = "+61" + cleaned[1:]
        if len(cleaned) != 12:
            raise ValueError(f"invalid AU phone number: {phone!r}")
        return cleaned
    if _E164.match(cleaned):
        return cleaned
    raise ValueError(f"invalid phone number: {phone!r}")


def _valid_email(address: str | None) -> bool:
    return bool(address) and bool(_EMAIL.match(address.strip()))


def _student_phone(inst: Installment) -> Recipient | None:
    if not inst.student_phone:
        return None
    try:
        number = format_phone_e164(inst.student_phone)
    except ValueError:
        return None
    return Recipient(address=number, name=inst.student_name, role="student")


def resolve_recipient(
    notification_type: NotificationType,
    channel: Channel,
    inst: Installment,
    admins: Sequence[dict[str, Any]] = (),
) -> Recipient | None:
    """Pick who receives one (installment, type, channel) notification.

    Returns ``None`` when no deliverable address exists; the caller must not
    reserve a notification slot in that case.

    - due soon: the student (email or phone)
    - overdue email: the assigned sales agent, agency admins on cc;
      admins alone when no agent is assigned
    - overdue sms: the student's phone
    """
    if channel is Channel.SMS:
        return _student_phone(inst)

    if notification_type is NotificationType.DUE_SOON:
        if not _valid_email(inst.student_email):
            return None
        return Recipient(address=inst.student_email.strip(), name=inst.student_name, role="student")

    admin_emails = [a["email"].strip() for a in admins if _valid_email(a.get("email"))]
    if _valid_email(inst.sales_agent_email):
        primary = inst.sales_agent_email.strip()
        cc = tuple(e for e in dict.fromkeys(admin_emails) if e.lower() != primary.lower())
        return Recipient(address=primary, name=inst.sales_agent_name, role="sales_agent", cc=cc)
    if admin_emails:
        unique = list(dict.fromkeys(admin_emails))
        return Recipient(address=unique[0], name=None, role="agency_admin", cc=tuple(unique[1:]))
    return None
