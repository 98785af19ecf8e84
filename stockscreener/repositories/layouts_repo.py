"""
User layouts repository.

Ownership: every read and write is scoped to user_id; another user's layout
id behaves exactly like a missing one.

Column lists are cleaned on write (identity columns first, unknown ids
dropped, duplicates removed). A blank name raises ValueError before any
write. Failed commits roll back, log, and return None / False.
"""

import logging

from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from stockscreener.models import UserLayout
from stockscreener.services.columns import CustomLayout, build_custom_layout

logger = logging.getLogger(__name__)


def to_custom_layout(row: UserLayout) -> CustomLayout:
    return CustomLayout(name=row.name, columns=tuple(row.columns or ()), id=row.id)


def list_layouts(db: Session, user_id: str) -> list[UserLayout]:
    return list(
        db.scalars(
            select(UserLayout).where(UserLayout.user_id == user_id).order_by(UserLayout.id)
        ).all()
    )


def get_layout(db: Session, user_id: str, layout_id: int) -> UserLayout | None:
    return db.scalars(
        select(UserLayout).where(and_(UserLayout.id == layout_id, UserLayout.user_id == user_id))
    ).first()


def create_layout(db: Session, user_id: str, name: str, columns: list[str]) -> UserLayout | None:
    layout = build_custom_layout(name, columns)
    row = UserLayout(user_id=user_id, name=layout.name, columns=list(layout.columns))
    try:
        db.add(row)
        db.commit()
        db.refresh(row)
    except Exception as exc:
        db.rollback()
        logger.error("[DB][Layouts] insert failed for user %s: %s", user_id, exc)
        return None
    logger.info("[DB][Layouts] created layout %d %r for user %s", row.id, row.name, user_id)
    return row


def update_layout(
    db: Session,
    user_id: str,
    layout_id: int,
    name: str | None = None,
    columns: list[str] | None = None,
) -> UserLayout | None:
    """Patch name and/or columns. Returns None when the layout is missing or the write fails."""
    row = get_layout(db, user_id, layout_id)
    if row is None:
        return None
    layout = build_custom_layout(
        name if name is not None else row.name,
        columns if columns is not None else row.columns,
        id=row.id,
    )
    row.name = layout.name
    row.columns = list(layout.columns)
    try:
        db.commit()
        db.refresh(row)
    except Exception as exc:
        db.rollback()
        logger.error("[DB][Layouts] update failed for layout %d: %s", layout_id, exc)
        return None
    return row


def delete_layout(db: Session, user_id: str, layout_id: int) -> bool:
    row = get_layout(db, user_id, layout_id)
    if row is None:
        return False
    try:
        db.delete(row)
        db.commit()
    except Exception as exc:
        db.rollback()
        logger.error("[DB][Layouts] delete failed for layout %d: %s", layout_id, exc)
        return False
    logger.info("[DB][Layouts] deleted layout %d for user %s", layout_id, user_id)
    return True
