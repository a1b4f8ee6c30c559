from typing import Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from storefront.schema.full_schema import Profile


async def get_profile_role(session: AsyncSession, user_id: str) -> Optional[str]:
    stmt = select(Profile.role).where(Profile.user_id == user_id)
    res = await session.execute(stmt)
    row = res.first()
    return row[0] if row else None
