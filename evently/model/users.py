import logging
from typing import Any, Dict

from fastapi import HTTPException
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .db import Event, Order, User
from ..helpers import is_valid_email, new_id, now_ts, to_iso

log = logging.getLogger(__name__)

UPDATABLE = ("first_name", "last_name", "username", "photo")


def user_to_dict(u: User) -> Dict[str, Any]:
    return {
        "id": u.id,
        "clerk_id": u.clerk_id,
        "email": u.email,
        "username": u.username,
        "first_name": u.first_name,
        "last_name": u.last_name,
        "photo": u.photo,
        "created_at": to_iso(u.created_at),
    }


async def create_user(
        db: AsyncSession, user: Dict[str, Any]
) -> Dict[str, Any]:
    clerk_id = (user.get("clerk_id") or "").strip()
    email = (user.get("email") or "").strip()
    username = (user.get("username") or "").strip()
    if not clerk_id:
        raise HTTPException(400, detail="clerk_id is required")
    if not is_valid_email(email):
        raise HTTPException(400, detail="a valid email is required")
    if not username:
        raise HTTPException(400, detail="username is required")

    try:
        async with db.begin():
            new_user = User(
                id=new_id(),
                clerk_id=clerk_id,
                email=email,
                username=username,
                first_name=user.get("first_name") or "",
                last_name=user.get("last_name") or "",
                photo=user.get("photo") or "",
                created_at=now_ts(),
            )
            db.add(new_user)
    except IntegrityError:
        # redelivered user.created
        async with db.begin():
            existing = (await db.execute(
                select(User).where(User.clerk_id == clerk_id)
            )).scalars().first()
            if existing is None:
                raise HTTPException(409, detail="User already exists")
            return user_to_dict(existing)
    log.info("created user %s (clerk_id=%s)", new_user.id, clerk_id)
    return user_to_dict(new_user)


async def get_user_by_id(db: AsyncSession, user_id: str) -> Dict[str, Any]:
    async with db.begin():
        user = await db.get(User, user_id)
        if user is None:
            raise HTTPException(404, detail="User not found")
        return user_to_dict(user)


async def update_user(
        db: AsyncSession, clerk_id: str, user: Dict[str, Any]
) -> Dict[str, Any]:
    try:
        async with db.begin():
            found = (await db.execute(
                select(User).where(User.clerk_id == clerk_id)
            )).scalars().first()
            if found is None:
                raise HTTPException(404, detail="User Update Failed")
            for k in UPDATABLE:
                if k in user and user[k] is not None:
                    setattr(found, k, user[k])
    except IntegrityError:
        raise HTTPException(409, detail="username already taken")
    return user_to_dict(found)


async def delete_user(db: AsyncSession, clerk_id: str) -> Dict[str, Any]:
    """Delete a user and detach everything that pointed at it.

    Events the user organized lose their organizer; orders the user placed
    lose their buyer. Both stay in place. Runs as one transaction.
    """
    async with db.begin():
        to_delete = (await db.execute(
            select(User).where(User.clerk_id == clerk_id)
        )).scalars().first()
        if to_delete is None:
            raise HTTPException(404, detail="User not found")

        await db.execute(
            update(Event)
            .where(Event.organizer_id == to_delete.id)
            .values(organizer_id=None)
        )
        await db.execute(
            update(Order)
            .where(Order.buyer_id == to_delete.id)
            .values(buyer_id=None)
        )
        deleted = user_to_dict(to_delete)
        await db.delete(to_delete)
    log.info("deleted user %s (clerk_id=%s)", deleted["id"], clerk_id)
    return deleted
