"""Family group endpoints: the group, its members and invitations."""

from datetime import datetime
from typing import Literal
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from finsync.core.database import get_db
from finsync.core.errors import FinsyncError
from finsync.core.middleware import get_current_user, TokenData
from finsync.core.ratelimit import rate_limit
from finsync.models.planning import MemberRole, MemberStatus
from finsync.services import family as family_service

router = APIRouter(prefix="/family", tags=["family"])


class CreateGroupRequest(BaseModel):
    name: str


class InviteRequest(BaseModel):
    email: str


class RespondRequest(BaseModel):
    action: Literal["accept", "decline"]


class GroupResponse(BaseModel):
    id: UUID
    name: str
    owner_user_id: str
    created_at: datetime

    class Config:
        from_attributes = True


class MemberResponse(BaseModel):
    """Family member or pending invitation."""
    id: UUID
    group_id: UUID
    user_id: str | None
    email: str | None
    role: MemberRole
    status: MemberStatus
    invited_at: datetime | None
    invitation_expires_at: datetime | None
    joined_at: datetime | None

    class Config:
        from_attributes = True


class InvitationResponse(MemberResponse):
    """Returned to the owner only; the token is what the invitee accepts."""
    invitation_token: str


class FamilyResponse(BaseModel):
    group: GroupResponse | None
    role: MemberRole | None = None
    members: list[MemberResponse] = []
    member_count: int = 0
    pending_count: int = 0
    max_members: int = family_service.MAX_FAMILY_MEMBERS


@router.get("", response_model=FamilyResponse)
async def get_family(
    db: AsyncSession = Depends(get_db),
    user: TokenData = Depends(get_current_user),
) -> FamilyResponse:
    view = await family_service.get_family(db, user.sub)
    if view is None:
        return FamilyResponse(group=None)
    return FamilyResponse(
        group=GroupResponse.model_validate(view.group),
        role=view.role,
        members=[MemberResponse.model_validate(m) for m in view.members],
        member_count=view.member_count,
        pending_count=view.pending_count,
    )


@router.post(
    "",
    response_model=GroupResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limit("api"))],
)
async def create_group(
    request: CreateGroupRequest,
    db: AsyncSession = Depends(get_db),
    user: TokenData = Depends(get_current_user),
) -> GroupResponse:
    """Create a family group; requires a family-tier subscription."""
    try:
        group = await family_service.create_group(db, user.sub, request.name, email=user.email)
        return GroupResponse.model_validate(group)
    except FinsyncError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))


@router.get("/members", response_model=list[MemberResponse])
async def get_members(
    db: AsyncSession = Depends(get_db),
    user: TokenData = Depends(get_current_user),
) -> list[MemberResponse]:
    members = await family_service.list_members(db, user.sub)
    return [MemberResponse.model_validate(m) for m in members]


@router.post(
    "/members/invite",
    response_model=InvitationResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limit("familyInvite"))],
)
async def invite_member(
    request: InviteRequest,
    db: AsyncSession = Depends(get_db),
    user: TokenData = Depends(get_current_user),
) -> InvitationResponse:
    try:
        member = await family_service.invite_member(db, user.sub, request.email, owner_email=user.email)
        return InvitationResponse.model_validate(member)
    except FinsyncError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))


@router.post("/invitations/{token}", response_model=MemberResponse)
async def respond_to_invitation(
    token: str,
    request: RespondRequest,
    db: AsyncSession = Depends(get_db),
    user: TokenData = Depends(get_current_user),
) -> MemberResponse:
    """Accept or decline an invitation sent to the caller's email."""
    try:
        member = await family_service.respond_to_invitation(
            db, token, user.sub, user.email, accept=request.action == "accept"
        )
        return MemberResponse.model_validate(member)
    except FinsyncError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))


@router.delete("/members/{member_id}", response_model=MemberResponse)
async def remove_member(
    member_id: UUID,
    db: AsyncSession = Depends(get_db),
    user: TokenData = Depends(get_current_user),
) -> MemberResponse:
    """Remove a member, withdraw an invitation, or leave the group."""
    try:
        member = await family_service.remove_member(db, member_id, user.sub)
        return MemberResponse.model_validate(member)
    except FinsyncError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
