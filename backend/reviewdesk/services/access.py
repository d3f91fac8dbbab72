from __future__ import annotations

from fastapi import HTTPException, status
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from reviewdesk.models import Location, OrgMember


async def can_access_location(session: AsyncSession, user_id: str, location: Location) -> bool:
    """Agency admins see every location; everyone else only their org's."""
    row = (
        await session.execute(
            select(OrgMember.id)
            .where(
                OrgMember.user_id == user_id,
                or_(OrgMember.is_agency_admin.is_(True), OrgMember.org_id == location.org_id),
            )
            .limit(1)
        )
    ).first()
    return row is not None


async def ensure_location_access(session: AsyncSession, user_id: str, location_id: int) -> Location:
    location = await session.get(Location, location_id)
    if not location:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Location not found")
    if not await can_access_location(session, user_id, location):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")
    return location
