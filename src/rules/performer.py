"""Performer filter: which acting identity may cause a rule to fire."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from config import settings

logger = logging.getLogger(__name__)

PERFORMER_FILTERS = frozenset(["anyone", "user_only", "contacts_only", "users"])


def normalize_jid(jid: str | None) -> str:
    """Reduce a JID to its bare user part, dropping device and domain suffixes."""
    if not jid:
        return ""
    user = jid.split("@", 1)[0]
    return user.split(":", 1)[0].strip()


def is_instance_owner(
    context: Mapping[str, Any],
    instance_owners: Mapping[str, str] | None = None,
) -> bool:
    """Return whether the acting identity owns the messaging instance."""
    if context.get("from_me"):
        return True
    owners = instance_owners if instance_owners is not None else settings.messaging.instance_owners
    owner_jid = owners.get(str(context.get("instance_id") or ""))
    if not owner_jid:
        return False
    return normalize_jid(context.get("actor_jid")) == normalize_jid(owner_jid)


def performer_allowed(
    performer_filter: str | None,
    context: Mapping[str, Any],
    *,
    allowed_performers: list[str] | None = None,
    instance_owners: Mapping[str, str] | None = None,
) -> bool:
    """Return whether the acting identity satisfies the rule's performer scope.

    Unknown filter values deny.
    """
    scope = performer_filter or "anyone"
    if scope == "anyone":
        return True
    if scope == "user_only":
        return is_instance_owner(context, instance_owners)
    if scope == "contacts_only":
        return not is_instance_owner(context, instance_owners)
    if scope == "users":
        actor = normalize_jid(context.get("actor_jid"))
        allowed = {normalize_jid(jid) for jid in (allowed_performers or [])}
        return bool(actor) and actor in allowed
    logger.warning("Unknown performer filter %r; denying", scope)
    return False
