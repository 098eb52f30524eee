"""Account lookups used by the billing engine."""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from membership_engine.accounts.models import (
    BusinessModel,
    ListingModel,
    MembershipModel,
    UserModel,
)


class AccountService:
    """Read/create helpers for users, businesses and listings.

    The aggregates themselves are managed by the wider platform; this engine
    only creates them in tests and bootstrap scripts.
    """

    async def create_user(
        self, session: AsyncSession, email: str | None = None,
        name: str = "", user_id: str | None = None,
    ) -> UserModel:
        user = UserModel(email=email, name=name)
        if user_id is not None:
            user.id = user_id
        session.add(user)
        await session.flush()
        return user

    async def create_business(
        self, session: AsyncSession, owner_user_id: str, name: str,
        business_id: str | None = None,
    ) -> BusinessModel:
        business = BusinessModel(owner_user_id=owner_user_id, name=name)
        if business_id is not None:
            business.id = business_id
        session.add(business)
        await session.flush()
        return business

    async def create_listing(
        self, session: AsyncSession, owner_user_id: str, title: str,
        listing_id: str | None = None,
    ) -> ListingModel:
        listing = ListingModel(owner_user_id=owner_user_id, title=title)
        if listing_id is not None:
            listing.id = listing_id
        session.add(listing)
        await session.flush()
        return listing

    async def get_user(self, session: AsyncSession, user_id: str) -> UserModel | None:
        return await session.get(UserModel, user_id)

    async def get_business(
        self, session: AsyncSession, business_id: str
    ) -> BusinessModel | None:
        return await session.get(BusinessModel, business_id)

    async def get_owned_business(
        self, session: AsyncSession, business_id: str, owner_user_id: str,
    ) -> BusinessModel | None:
        result = await session.execute(
            select(BusinessModel).where(
                BusinessModel.id == business_id,
                BusinessModel.owner_user_id == owner_user_id,
            )
        )
        return result.scalar_one_or_none()

    async def get_listing(
        self, session: AsyncSession, listing_id: str
    ) -> ListingModel | None:
        return await session.get(ListingModel, listing_id)

    async def get_membership(
        self, session: AsyncSession, owner_kind: str, owner_id: str,
    ) -> MembershipModel | None:
        result = await session.execute(
            select(MembershipModel).where(
                MembershipModel.owner_kind == owner_kind,
                MembershipModel.owner_id == owner_id,
            )
        )
        return result.scalar_one_or_none()
