"""Workspace-scoped DB context helpers."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import text
from sqlalchemy.orm import Session


def set_workspace_context(session: Session, workspace_id: Optional[str]) -> None:
    """Set workspace context for PostgreSQL RLS policies."""

    bind = session.get_bind()
    if bind is None or bind.dialect.name != "postgresql":
        return

    session.execute(
        text("SELECT set_config('app.current_workspace_id', :workspace_id, false)"),
        {"workspace_id": workspace_id or ""},
    )


def reset_workspace_context(session: Session) -> None:
    set_workspace_context(session=session, workspace_id=None)


@contextmanager
def workspace_context(session: Session, workspace_id: Optional[str]) -> Iterator[Session]:
    """Scope a job's session to one tenant; the setting outlives commits inside the job."""

    set_workspace_context(session, workspace_id)
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        reset_workspace_context(session)
