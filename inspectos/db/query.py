"""
Pagination helper for list endpoints.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, List, Optional

from sqlalchemy import Select, func, select
from sqlalchemy.orm import Session

from inspectos.engine.errors import ValidationError


@dataclass
class Page:
    items: List[Any] = field(default_factory=list)
    count: int = 0
    page: Optional[int] = None
    page_size: Optional[int] = None

    @property
    def has_next(self) -> bool:
        return self.page is not None and self.page * self.page_size < self.count

    @property
    def has_previous(self) -> bool:
        return self.page is not None and self.page > 1


def paginate(session: Session, stmt: Select, page: Optional[int] = None,
             page_size: Optional[int] = None, max_page_size: int = 100) -> Page:
    """
    Run ``stmt`` and return a Page. With ``page`` None every row is returned.
    """
    if page is None:
        items = list(session.scalars(stmt).unique())
        return Page(items=items, count=len(items))

    errors = []
    if page < 1:
        errors.append("page: must be >= 1")
    if page_size is None or page_size < 1:
        errors.append("page_size: must be >= 1")
    if errors:
        raise ValidationError("Invalid pagination", validation_errors=errors)
    page_size = min(page_size, max_page_size)

    count = session.scalar(select(func.count()).select_from(stmt.order_by(None).subquery()))
    items = list(session.scalars(stmt.offset((page - 1) * page_size).limit(page_size)).unique())
    return Page(items=items, count=count or 0, page=page, page_size=page_size)
