"""Page slicing shared by history and admin listings."""

import math
from dataclasses import dataclass, field
from typing import Any, Dict, Generic, List, Sequence, TypeVar

from .errors import ValidationError

T = TypeVar("T")


@dataclass(frozen=True)
class Page(Generic[T]):
    items: List[T] = field(default_factory=list)
    page: int = 1
    limit: int = 10
    pages: int = 0
    total: int = 0

    def pagination(self) -> Dict[str, Any]:
        return {'current': self.page, 'pages': self.pages, 'total': self.total, 'limit': self.limit}


def paginate(items: Sequence[T], page: int = 1, limit: int = 10, max_limit: int = 100) -> Page[T]:
    """
    Slice an already sorted sequence

    Raises:
        ValidationError: If page or limit is below 1
    """
    if page < 1:
        raise ValidationError("page must be at least 1", {"field": "page"})
    if limit < 1:
        raise ValidationError("limit must be at least 1", {"field": "limit"})
    limit = min(limit, max_limit)
    total = len(items)
    start = (page - 1) * limit
    return Page(
        items=list(items[start:start + limit]),
        page=page,
        limit=limit,
        pages=math.ceil(total / limit),
        total=total
    )
