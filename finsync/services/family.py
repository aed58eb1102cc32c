"""
Family groups: creation, invitations and membership.

A family-tier subscriber creates a group and becomes its owner and first
active member. The owner invites people by email; an invitation is a pending
member row carrying a one-time token that the invitee accepts or declines.
"""

import logging
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from finsync.core.errors import (
    ConflictError,
    GoneError,
    InvalidInputError,
    NotFoundError,
    PermissionDeniedError,
)
from finsync.models.billing import SubscriptionStatus, SubscriptionTier, UserSubscription
from finsync.models.planning import FamilyGroup, FamilyMember, MemberRole, MemberStatus
from finsync.utils.timezone import utcnow, as_utc

logger = logging.getLogger(__name__)

MAX_FAMILY_MEMBERS = 7
INVITATION_EXPIRY_DAYS = 7

GROUP_NAME_PATTERN = re.compile(r"^[A-Za-z0-9\s\-']{2,50}$")
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

# Subscription states that still carry family features
FAMILY_ENTITLED_STATUSES = (
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.TRIALING,
    SubscriptionStatus.CANCELING,
)


@dataclass(frozen=True)
class FamilyView:
    group: FamilyGroup
    members: list[FamilyMember]
    role: MemberRole

    @property
    def member_count(self) -> int:
        return sum(1 for m in self.members if m.status == MemberStatus.ACTIVE)

    @property
    def pending_count(self) -> int:
        return sum(1 for m in self.members if m.status == MemberStatus.INVITED)


def _normalize_email(email: str | None) -> str:
    return (email or "").strip().lower()


async def _active_membership(db: AsyncSession, user_id: str) -> FamilyMember | None:
    result = await db.execute(
        select(FamilyMember).where(
            FamilyMember.user_id == user_id,
            FamilyMember.status == MemberStatus.ACTIVE,
        )
    )
    return result.scalar_one_or_none()


async def _require_family_tier(db: AsyncSession, user_id: str) -> None:
    result = await db.execute(select(UserSubscription).where(UserSubscription.user_id == user_id))
    subscription = result.scalar_one_or_none()
    if (
        subscription is None
        or subscription.tier != SubscriptionTier.FAMILY
        or subscription.status not in FAMILY_ENTITLED_STATUSES
    ):
        raise PermissionDeniedError("Family tier subscription required")


async def _owned_group(db: AsyncSession, user_id: str) -> FamilyGroup | None:
    result = await db.execute(
        select(FamilyGroup).where(FamilyGroup.owner_user_id == user_id).order_by(FamilyGroup.created_at.desc())
    )
    return result.scalars().first()


async def create_group(
    db: AsyncSession,
    user_id: str,
    name: str,
    email: str | None = None,
    now: datetime | None = None,
) -> FamilyGroup:
    """
    Create a family group owned by the caller.

    Raises:
        InvalidInputError: name is not 2-50 letters, digits, spaces, hyphens or apostrophes
        PermissionDeniedError: caller has no family-tier subscription
        ConflictError: caller already belongs to a group
    """
    name = (name or "").strip()
    if not GROUP_NAME_PATTERN.match(name):
        raise InvalidInputError(
            "Group name must be 2-50 characters of letters, numbers, spaces, hyphens and apostrophes"
        )

    await _require_family_tier(db, user_id)
    if await _active_membership(db, user_id) is not None:
        raise ConflictError("You are already a member of a family group")

    now = now or utcnow()
    group = FamilyGroup(name=name, owner_user_id=user_id)
    try:
        # uq_family_members_active_user also catches a concurrent create or accept
        async with db.begin_nested():
            db.add(group)
            await db.flush()
            db.add(
                FamilyMember(
                    group_id=group.id,
                    user_id=user_id,
                    email=_normalize_email(email) or None,
                    role=MemberRole.OWNER,
                    status=MemberStatus.ACTIVE,
                    invited_by=user_id,
                    invited_at=now,
                    joined_at=now,
                )
            )
            await db.flush()
    except IntegrityError:
        raise ConflictError("You are already a member of a family group")

    logger.info(f"Created family group {group.id} for user {user_id}")
    return group


async def get_family(db: AsyncSession, user_id: str) -> FamilyView | None:
    """The caller's group with its active and invited members, or None."""
    membership = await _active_membership(db, user_id)
    if membership is None:
        return None

    group = await db.get(FamilyGroup, membership.group_id)
    result = await db.execute(
        select(FamilyMember).where(
            FamilyMember.group_id == group.id,
            FamilyMember.status != MemberStatus.REMOVED,
        )
    )
    members = sorted(
        result.scalars().all(),
        key=lambda m: (m.role != MemberRole.OWNER, m.status != MemberStatus.ACTIVE, m.email or ""),
    )
    return FamilyView(group=group, members=members, role=membership.role)


async def list_members(db: AsyncSession, user_id: str) -> list[FamilyMember]:
    view = await get_family(db, user_id)
    return view.members if view else []


async def invite_member(
    db: AsyncSession,
    owner_id: str,
    email: str,
    owner_email: str | None = None,
    now: datetime | None = None,
) -> FamilyMember:
    """
    Invite an email address into the owner's group.

    The returned member carries the invitation token; it expires after
    INVITATION_EXPIRY_DAYS. Active and pending seats count towards
    MAX_FAMILY_MEMBERS.
    """
    group = await _owned_group(db, owner_id)
    if group is None:
        raise PermissionDeniedError("Only the group owner can invite family members")

    email = _normalize_email(email)
    if not EMAIL_PATTERN.match(email) or len(email) > 255:
        raise InvalidInputError("Please enter a valid email address")
    if email == _normalize_email(owner_email):
        raise InvalidInputError("You cannot invite yourself")

    result = await db.execute(
        select(FamilyMember.email, FamilyMember.status).where(
            FamilyMember.group_id == group.id,
            FamilyMember.status.in_([MemberStatus.ACTIVE, MemberStatus.INVITED]),
        )
    )
    seats = result.all()
    for seat in seats:
        if seat.email == email:
            state = "is already a member" if seat.status == MemberStatus.ACTIVE else "has a pending invitation"
            raise ConflictError(f"This email {state} of the family group")
    if len(seats) >= MAX_FAMILY_MEMBERS:
        raise ConflictError(f"Family group is at maximum capacity ({MAX_FAMILY_MEMBERS} members)")

    now = now or utcnow()
    member = FamilyMember(
        group_id=group.id,
        email=email,
        role=MemberRole.MEMBER,
        status=MemberStatus.INVITED,
        invited_by=owner_id,
        invited_at=now,
        invitation_token=secrets.token_urlsafe(32),
        invitation_expires_at=now + timedelta(days=INVITATION_EXPIRY_DAYS),
    )
    db.add(member)
    await db.flush()

    logger.info(f"User {owner_id} invited a member to family group {group.id}")
    return member


async def respond_to_invitation(
    db: AsyncSession,
    token: str,
    user_id: str,
    user_email: str | None,
    accept: bool,
    now: datetime | None = None,
) -> FamilyMember:
    """
    Accept or decline an invitation addressed to the caller's email.

    Raises:
        NotFoundError: unknown token
        GoneError: invitation expired or already answered
        PermissionDeniedError: invitation was sent to another address
        ConflictError: caller already belongs to a group
    """
    now = now or utcnow()
    result = await db.execute(select(FamilyMember).where(FamilyMember.invitation_token == token))
    invitation = result.scalar_one_or_none()
    if invitation is None:
        raise NotFoundError("Invitation not found")
    if invitation.status != MemberStatus.INVITED:
        raise GoneError("This invitation has already been responded to")
    expires_at = as_utc(invitation.invitation_expires_at)
    if expires_at is not None and expires_at < now:
        raise GoneError("This invitation has expired")
    if not user_email or _normalize_email(user_email) != invitation.email:
        raise PermissionDeniedError("This invitation was sent to a different email address")

    if not accept:
        invitation.status = MemberStatus.REMOVED
        invitation.invitation_token = None
        await db.flush()
        return invitation

    if await _active_membership(db, user_id) is not None:
        raise ConflictError("You are already a member of a family group")

    try:
        async with db.begin_nested():
            invitation.user_id = user_id
            invitation.status = MemberStatus.ACTIVE
            invitation.joined_at = now
            invitation.invitation_token = None
            await db.flush()
    except IntegrityError:
        raise ConflictError("You are already a member of a family group")

    logger.info(f"User {user_id} joined family group {invitation.group_id}")
    return invitation


async def remove_member(db: AsyncSession, member_id: UUID, user_id: str) -> FamilyMember:
    """
    Remove a member (owner) or leave the group (the member themselves).

    Pending invitations can be withdrawn the same way. The owner cannot leave.
    """
    member = await db.get(FamilyMember, member_id)
    if member is None or member.status == MemberStatus.REMOVED:
        raise NotFoundError("Member not found")

    group = await db.get(FamilyGroup, member.group_id)
    is_owner = group is not None and group.owner_user_id == user_id
    is_self = member.user_id == user_id

    if is_self and member.role == MemberRole.OWNER:
        raise InvalidInputError("The owner cannot leave the family group")
    if not is_owner and not is_self:
        raise PermissionDeniedError("Only the group owner can remove members")

    member.status = MemberStatus.REMOVED
    member.invitation_token = None
    await db.flush()

    logger.info(f"Family member {member_id} {'left' if is_self else 'removed'} by {user_id}")
    return member

