import uuid
from typing import List

from fastapi import APIRouter, HTTPException
from sqlmodel import select

from db import SessionDep
from models import Category, utcnow
from schemas import CategoryCreate, CategoryUpdate

router = APIRouter(tags=["categories"])


def _get_category(session: SessionDep, category_id: str) -> Category:
    category = session.get(Category, category_id)
    if category is None:
        raise HTTPException(status_code=404, detail="Category not found")
    return category


def _name_taken(session: SessionDep, name: str, exclude_id=None) -> bool:
    query = select(Category.id).where(Category.name == name)
    if exclude_id is not None:
        query = query.where(Category.id != exclude_id)
    return session.exec(query).first() is not None


@router.get("/", response_model=List[Category])
def list_categories(session: SessionDep):
    return session.exec(select(Category).order_by(Category.name)).all()


@router.get("/{category_id}", response_model=Category)
def get_category(category_id: str, session: SessionDep):
    return _get_category(session, category_id)


@router.post("/", response_model=Category, status_code=201)
def create_category(category_in: CategoryCreate, session: SessionDep):
    if _name_taken(session, category_in.name):
        raise HTTPException(status_code=400, detail="Category already exists")

    category = Category(
        id=str(uuid.uuid4()),
        name=category_in.name,
        description=category_in.description,
    )
    session.add(category)
    session.commit()
    session.refresh(category)
    return category


@router.put("/{category_id}", response_model=Category)
def update_category(category_id: str, category_in: CategoryUpdate, session: SessionDep):
    category = _get_category(session, category_id)

    changes = {
        key: value
        for key, value in category_in.model_dump(exclude_unset=True).items()
        if value is not None
    }
    if "name" in changes and _name_taken(session, changes["name"], exclude_id=category_id):
        raise HTTPException(status_code=400, detail="Category already exists")

    for key, value in changes.items():
        setattr(category, key, value)
    category.updated_at = utcnow()

    session.add(category)
    session.commit()
    session.refresh(category)
    return category


@router.delete("/{category_id}")
def delete_category(category_id: str, session: SessionDep):
    category = _get_category(session, category_id)
    session.delete(category)
    session.commit()
    return {"success": True, "message": "Category deleted successfully"}
