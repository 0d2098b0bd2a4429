"""Durable user identity rows.

A user row outlives any individual session: it is upserted on every successful
login, touched on authenticated activity and never removed on logout.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import Index, String, func, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Mapped, mapped_column

from social.skyreader.auth.model.base import Base, didpk, str512, str1024, timestamptz


class UserRecord(Base):
    """Identity of a DID as last seen at login."""

    __tablename__ = "users"

    did: Mapped[didpk]
    handle: Mapped[str512]
    display_name: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    avatar_url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    pds_url: Mapped[str1024]
    created_at: Mapped[timestamptz] = mapped_column(server_default=func.now())
    updated_at: Mapped[timestamptz] = mapped_column(server_default=func.now())
    last_synced_at: Mapped[Optional[timestamptz]]
    last_active_at: Mapped[Optional[timestamptz]]

    __table_args__ = (Index("idx_users_handle", "handle"),)


def upsert_user_stmt(
    did: str,
    handle: str,
    pds_url: str,
    display_name: Optional[str],
    avatar_url: Optional[str],
    now: datetime,
):
    """Create PostgreSQL upsert statement for a user row.

    Display fields and the PDS location are overwritten on conflict; the
    creation timestamp is kept.
    """
    return (
        insert(UserRecord)
        .values(
            [
                {
                    "did": did,
                    "handle": handle,
                    "display_name": display_name,
                    "avatar_url": avatar_url,
                    "pds_url": pds_url,
                    "created_at": now,
                    "updated_at": now,
                    "last_synced_at": now,
                    "last_active_at": now,
                }
            ]
        )
        .on_conflict_do_update(
            index_elements=["did"],
            set_={
                "handle": handle,
                "display_name": display_name,
                "avatar_url": avatar_url,
                "pds_url": pds_url,
                "updated_at": now,
                "last_synced_at": now,
                "last_active_at": now,
            },
        )
    )


def touch_user_stmt(did: str, now: datetime):
    return (
        update(UserRecord).where(UserRecord.did == did).values(last_active_at=now)
    )
