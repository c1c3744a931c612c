from __future__ import annotations
from typing import Any, Dict, Optional

from fastapi import HTTPException
from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from .db import Event, Order, User
from .categories import category_to_dict, get_category_by_name
from ..helpers import clamp_page, new_id, now_ts, to_iso, total_pages
from ..validators import validate_event_payload

DEFAULT_PAGE_SIZE = 6
RELATED_PAGE_SIZE = 3


def organizer_to_dict(u: Optional[User]) -> Optional[Dict[str, Any]]:
    if u is None:
        return None
    return {"id": u.id, "first_name": u.first_name, "last_name": u.last_name}


def event_to_dict(e: Event) -> Dict[str, Any]:
    return {
        "id": e.id,
        "title": e.title,
        "description": e.description,
        "location": e.location,
        "created_at": to_iso(e.created_at),
        "image_url": e.image_url,
        "start_date_time": to_iso(e.start_date_time),
        "end_date_time": to_iso(e.end_date_time),
        "price": e.price,
        "is_free": e.is_free,
        "url": e.url,
        "category": category_to_dict(e.category),
        "organizer": organizer_to_dict(e.organizer),
    }


def populated(stmt):
    """Eager-load organizer and category onto an Event select."""
    return stmt.options(
        selectinload(Event.organizer),
        selectinload(Event.category),
    )


async def _load_event(db: AsyncSession, event_id: str) -> Optional[Event]:
    result = await db.execute(
        populated(select(Event).where(Event.id == event_id))
        .execution_options(populate_existing=True)
    )
    return result.scalars().first()


async def _page(db: AsyncSession, conditions, page: int, limit: int):
    skip = (page - 1) * limit
    rows = await db.execute(
        populated(select(Event).where(*conditions))
        .execution_options(populate_existing=True)
        .order_by(Event.created_at.desc(), Event.id)
        .offset(skip)
        .limit(limit)
    )
    count = (await db.execute(
        select(func.count()).select_from(Event).where(*conditions)
    )).scalar_one()
    return {
        "data": [event_to_dict(e) for e in rows.scalars().all()],
        "total_pages": total_pages(count, limit),
    }


# CREATE
async def create_event(
        db: AsyncSession, user_id: str, event: Dict[str, Any]
) -> Dict[str, Any]:
    fields = validate_event_payload(event)
    async with db.begin():
        organizer = await db.get(User, user_id)
        if organizer is None:
            raise HTTPException(404, detail="Organizer not found")

        new_event = Event(
            id=new_id(),
            created_at=now_ts(),
            organizer_id=user_id,
            **fields,
        )
        db.add(new_event)
        await db.flush()
        return event_to_dict(await _load_event(db, new_event.id))


# READ
async def get_event_by_id(db: AsyncSession, event_id: str) -> Dict[str, Any]:
    async with db.begin():
        event = await _load_event(db, event_id)
        if event is None:
            raise HTTPException(404, detail="Event not found")
        return event_to_dict(event)


# UPDATE
async def update_event(
        db: AsyncSession, user_id: str, event: Dict[str, Any]
) -> Dict[str, Any]:
    event_id = event.get("id") if isinstance(event, dict) else None
    fields = validate_event_payload(event)
    async with db.begin():
        to_update = await db.get(Event, event_id) if event_id else None
        if to_update is None or to_update.organizer_id != user_id:
            raise HTTPException(403, detail="Unauthorized or event not found")

        for k, v in fields.items():
            setattr(to_update, k, v)
        await db.flush()
        return event_to_dict(await _load_event(db, event_id))


# DELETE
async def delete_event(db: AsyncSession, event_id: str) -> bool:
    async with db.begin():
        # orders outlive the event they were bought for
        await db.execute(
            update(Order)
            .where(Order.event_id == event_id)
            .values(event_id=None)
        )
        result = await db.execute(delete(Event).where(Event.id == event_id))
        return result.rowcount > 0


# LISTINGS
async def get_all_events(
        db: AsyncSession,
        query: str = "",
        limit: int = DEFAULT_PAGE_SIZE,
        page: int = 1,
        category: str = "",
) -> Dict[str, Any]:
    page, limit = clamp_page(page, limit, DEFAULT_PAGE_SIZE)
    async with db.begin():
        conditions = []
        if query:
            conditions.append(Event.title.icontains(query, autoescape=True))
        if category:
            found = await get_category_by_name(db, category)
            if found is not None:
                conditions.append(Event.category_id == found.id)
        return await _page(db, conditions, page, limit)


async def get_events_by_user(
        db: AsyncSession,
        user_id: str,
        limit: int = DEFAULT_PAGE_SIZE,
        page: int = 1,
) -> Dict[str, Any]:
    page, limit = clamp_page(page, limit, DEFAULT_PAGE_SIZE)
    async with db.begin():
        return await _page(db, [Event.organizer_id == user_id], page, limit)


async def get_related_events_by_category(
        db: AsyncSession,
        category_id: str,
        event_id: str,
        limit: int = RELATED_PAGE_SIZE,
        page: int = 1,
) -> Dict[str, Any]:
    page, limit = clamp_page(page, limit, RELATED_PAGE_SIZE)
    conditions = [and_(Event.category_id == category_id,
                       Event.id != event_id)]
    async with db.begin():
        return await _page(db, conditions, page, limit)
