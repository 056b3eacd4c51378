"""Store and client handles passed to the services."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from app.stores import (
    MemoryCatalogStore,
    MemoryCommentStore,
    MemoryLikeStore,
    MemorySubmissionStore,
    MemoryTemplateStore,
    MemoryTxManager,
    MemoryUserStore,
)
from app.supabase_admin import NullSupabaseAdmin, SupabaseAdminClient


@dataclass
class Backend:
    templates: Any
    submissions: Any
    likes: Any
    comments: Any
    users: Any
    catalog: Any
    tx_mgr: Any
    supabase_admin: Any


def build_memory_backend(supabase_admin=None, topics: list[str] | None = None) -> Backend:
    templates = MemoryTemplateStore()
    submissions = MemorySubmissionStore()
    likes = MemoryLikeStore()
    comments = MemoryCommentStore()
    users = MemoryUserStore()
    catalog = MemoryCatalogStore(topics)
    tx_mgr = MemoryTxManager([templates, submissions, likes, comments, users, catalog])
    return Backend(
        templates=templates,
        submissions=submissions,
        likes=likes,
        comments=comments,
        users=users,
        catalog=catalog,
        tx_mgr=tx_mgr,
        supabase_admin=supabase_admin or NullSupabaseAdmin(),
    )


def build_db_backend(supabase_admin=None) -> Backend:
    from app.stores_db import (
        DbCatalogStore,
        DbCommentStore,
        DbLikeStore,
        DbSubmissionStore,
        DbTemplateStore,
        DbTxManager,
        DbUserStore,
    )

    return Backend(
        templates=DbTemplateStore(),
        submissions=DbSubmissionStore(),
        likes=DbLikeStore(),
        comments=DbCommentStore(),
        users=DbUserStore(),
        catalog=DbCatalogStore(),
        tx_mgr=DbTxManager(),
        supabase_admin=supabase_admin or SupabaseAdminClient.from_env(),
    )


def build_backend(use_db: bool) -> Backend:
    return build_db_backend() if use_db else build_memory_backend()


def with_tx(tx_mgr, fn):
    tx = tx_mgr.begin()
    try:
        result = fn(tx)
        tx.commit()
        return result
    except Exception:
        tx.rollback()
        raise
