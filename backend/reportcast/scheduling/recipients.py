"""Recipient classification against a tenant's allowed email domains.

Fail-closed: when a tenant has no allowed-domain configuration, or the
configuration cannot be parsed, every recipient is external.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol


class RecipientLike(Protocol):
    email: str
    is_external: bool


@dataclass(frozen=True)
class ClassifiedRecipient:
    """An email with its derived domain and external flag."""

    email: str
    domain: str
    is_external: bool


@dataclass(frozen=True)
class RecipientPartition:
    internal: list[str] = field(default_factory=list)
    external: list[str] = field(default_factory=list)

    @property
    def has_external(self) -> bool:
        return bool(self.external)

    @property
    def total(self) -> int:
        return len(self.internal) + len(self.external)


@dataclass(frozen=True)
class RecipientDiff:
    """Before/after snapshot of a recipient-list replacement."""

    before: RecipientPartition
    after: RecipientPartition
    added_external: list[str]
    removed_external: list[str]


def email_domain(email: str) -> str:
    """Lowercase part after the last ``@``, or ``""`` when there is none."""
    _, at, domain = email.strip().rpartition("@")
    return domain.lower() if at else ""


def parse_allowed_domains(raw: Any) -> frozenset[str] | None:
    """Normalize a tenant's allowed-domain setting.

    Accepts ``None``, a JSON array string, or a sequence of strings. Returns
    ``None`` for absent or malformed configuration.
    """
    if raw is None:
        return None
    if isinstance(raw, str):
        if not raw.strip():
            return None
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            return None
    if not isinstance(raw, (list, tuple, set, frozenset)):
        return None
    domains: set[str] = set()
    for item in raw:
        if not isinstance(item, str):
            return None
        item = item.strip().lower().lstrip("@")
        if item:
            domains.add(item)
    return frozenset(domains)


def classify_recipients(
    emails: Iterable[str],
    allowed_domains: Any,
) -> list[ClassifiedRecipient]:
    """Classify each email as internal or external.

    ``allowed_domains`` may be the raw tenant setting; it is parsed with
    :func:`parse_allowed_domains`.
    """
    allowed = (
        allowed_domains
        if isinstance(allowed_domains, frozenset)
        else parse_allowed_domains(allowed_domains)
    )
    result: list[ClassifiedRecipient] = []
    for email in emails:
        trimmed = email.strip()
        domain = email_domain(trimmed)
        is_external = allowed is None or not domain or domain not in allowed
        result.append(ClassifiedRecipient(email=trimmed, domain=domain, is_external=is_external))
    return result


def partition_recipients(recipients: Iterable[RecipientLike]) -> RecipientPartition:
    internal: list[str] = []
    external: list[str] = []
    for r in recipients:
        (external if r.is_external else internal).append(r.email)
    return RecipientPartition(internal=internal, external=external)


def diff_recipients(
    before: Sequence[RecipientLike],
    after: Sequence[RecipientLike],
) -> RecipientDiff:
    """Compute the audit delta between two recipient lists."""
    old = partition_recipients(before)
    new = partition_recipients(after)
    old_external = set(old.external)
    new_external = set(new.external)
    return RecipientDiff(
        before=old,
        after=new,
        added_external=[e for e in new.external if e not in old_external],
        removed_external=[e for e in old.external if e not in new_external],
    )
