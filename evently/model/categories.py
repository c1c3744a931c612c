from typing import Any, Dict, List, Optional

from fastapi import HTTPException
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .db import Category
from ..helpers import new_id


def category_to_dict(c: Optional[Category]) -> Optional[Dict[str, Any]]:
    if c is None:
        return None
    return {"id": c.id, "name": c.name}


async def get_category_by_name(
        db: AsyncSession, name: str
) -> Optional[Category]:
    # substring match, first hit wins
    result = await db.execute(
        select(Category)
        .where(Category.name.icontains(name, autoescape=True))
        .order_by(Category.name)
        .limit(1)
    )
    return result.scalars().first()


async def create_category(
        db: AsyncSession, category_name: str
) -> Dict[str, Any]:
    name = (category_name or "").strip()
    if not name:
        raise HTTPException(400, detail="category name is required")

    try:
        async with db.begin():
            category = Category(id=new_id(), name=name)
            db.add(category)
            await db.flush()
            return category_to_dict(category)
    except IntegrityError:
        # name taken (possibly by a concurrent request)
        async with db.begin():
            existing = (await db.execute(
                select(Category).where(Category.name == name)
            )).scalars().one()
            return category_to_dict(existing)


async def get_all_categories(db: AsyncSession) -> List[Dict[str, Any]]:
    async with db.begin():
        result = await db.execute(select(Category).order_by(Category.name))
        return [category_to_dict(c) for c in result.scalars().all()]
