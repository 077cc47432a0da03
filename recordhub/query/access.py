"""
Read access control for record families.

A requester is identified by an optional user id and a set of group ids,
taken from request headers.  The predicate built here is ANDed into every
list / get / count query, so callers never see records they cannot read:

  - ``_visibility == 'public'``, or
  - the user is in ``_ownerUsers`` / ``_viewerUsers``, or
  - one of the groups is in ``_ownerGroups`` / ``_viewerGroups`` and the
    record is not private.

Anonymous requesters only see public records.  With access control
switched off (``ACCESS_CONTROL=false``) the predicate matches everything.
"""
from __future__ import annotations

from dataclasses import dataclass

from recordhub.core.logging import get_logger
from recordhub.query.condition import (
    Condition,
    FieldCondition,
    Operator,
    MATCH_ALL,
    and_,
    eq,
    or_,
)
from recordhub.query.sets import split_ids

logger = get_logger(__name__)


# ── Data classes ────────────────────────────────────────


@dataclass(frozen=True)
class Requester:
    """Identity of the caller as seen by the query engine."""
    user_id: str | None = None
    group_ids: tuple[str, ...] = ()

    @property
    def anonymous(self) -> bool:
        return not self.user_id and not self.group_ids


ANONYMOUS = Requester()


def parse_requester(user_header: str | None, groups_header: str | None) -> Requester:
    """Build a ``Requester`` from raw header values (groups comma separated)."""
    user_id = (user_header or "").strip() or None
    return Requester(user_id=user_id, group_ids=split_ids(groups_header))


# ── Predicate ───────────────────────────────────────────


def build_access_predicate(
    requester: Requester,
    *,
    enabled: bool = True,
    has_access_fields: bool = True,
) -> Condition:
    """Return the condition a record must satisfy to be readable.

    Parameters
    ----------
    requester:
        The caller's identity.
    enabled:
        ``False`` disables read access control entirely.
    has_access_fields:
        Families without visibility / owner fields (relations) are gated
        through their endpoints instead, so they get ``MATCH_ALL`` here.

    Returns
    -------
    Condition
        Predicate to AND into the query's base match.
    """
    if not enabled or not has_access_fields:
        return MATCH_ALL

    clauses: list[Condition] = [eq("_visibility", "public")]
    if requester.user_id:
        clauses.append(eq("_ownerUsers", requester.user_id))
        clauses.append(eq("_viewerUsers", requester.user_id))
    if requester.group_ids:
        groups = list(requester.group_ids)
        clauses.append(
            and_(
                or_(
                    FieldCondition("_ownerGroups", Operator.INQ, groups),
                    FieldCondition("_viewerGroups", Operator.INQ, groups),
                ),
                FieldCondition("_visibility", Operator.NEQ, "private"),
            )
        )

    if requester.anonymous:
        logger.debug("Anonymous requester: public records only")
    return or_(*clauses)
